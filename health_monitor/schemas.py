"""
Pydantic Schemas for external payloads.

Responses from the protocol metrics service and the Telegram Bot API
are validated here before anything else touches them.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


# =============================================================
# PROTOCOL METRICS SERVICE
# =============================================================

class MetricsResponse(BaseModel):
    """POST /metrics response: one entry per requested owner, null if absent."""
    metrics: List[Optional[int]]


# =============================================================
# TELEGRAM
# =============================================================

class TelegramChat(BaseModel):
    id: int
    type: str = "private"


class TelegramMessage(BaseModel):
    message_id: int
    chat: TelegramChat
    text: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None


class TelegramUpdatesResponse(BaseModel):
    ok: bool
    result: List[dict] = Field(default_factory=list)
    description: Optional[str] = None
