"""
Account Directory ORM Models.

============================================================
PURPOSE
============================================================
Durable layout for monitored accounts, their subscribers and
each subscriber's thresholds.

============================================================
TABLES
============================================================
- accounts: one row per watched address, holding last metric
- subscribers: one row per (address, recipient)
- thresholds: one row per (subscriber, level), holding armed flag

Deletes cascade accounts -> subscribers -> thresholds.

============================================================
"""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..models import MonitoredAccount, Subscriber, Threshold


class Base(DeclarativeBase):
    """Declarative base for directory tables."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class AccountModel(Base, TimestampMixin):
    """A watched on-chain account."""

    __tablename__ = "accounts"

    address: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_metric: Mapped[int] = mapped_column(BigInteger, nullable=False)

    subscribers: Mapped[list["SubscriberModel"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SubscriberModel.id",
    )

    def to_domain(self) -> MonitoredAccount:
        return MonitoredAccount(
            address=self.address,
            last_metric=self.last_metric,
            subscribers=tuple(s.to_domain() for s in self.subscribers),
        )


class SubscriberModel(Base):
    """One recipient's subscription to one account."""

    __tablename__ = "subscribers"
    __table_args__ = (
        UniqueConstraint("address", "recipient_id", name="uq_subscriber_address_recipient"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("accounts.address", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    account: Mapped[AccountModel] = relationship(back_populates="subscribers")
    thresholds: Mapped[list["ThresholdModel"]] = relationship(
        back_populates="subscriber",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ThresholdModel.level",
    )

    def to_domain(self) -> Subscriber:
        return Subscriber(
            id=self.id,
            recipient_id=self.recipient_id,
            thresholds=tuple(t.to_domain() for t in self.thresholds),
        )


class ThresholdModel(Base):
    """A trigger level with its hysteresis arm state."""

    __tablename__ = "thresholds"
    __table_args__ = (
        UniqueConstraint("subscriber_id", "level", name="uq_threshold_subscriber_level"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    level: Mapped[int] = mapped_column(BigInteger, nullable=False)
    armed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    subscriber: Mapped[SubscriberModel] = relationship(back_populates="thresholds")

    def to_domain(self) -> Threshold:
        return Threshold(id=self.id, level=self.level, armed=self.armed)
