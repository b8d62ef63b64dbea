"""
Chain integration - protocol metrics, Solana RPC and instruction events.
"""

from .addresses import derive_vault_address, parse_address
from .listener import InstructionListener, find_instruction_events, parse_logs_notification
from .protocol import ProtocolApiClient, ProtocolClient, ProtocolClientAdapter
from .rpc import SolanaRpcClient

__all__ = [
    # Protocol
    "ProtocolClient",
    "ProtocolApiClient",
    "ProtocolClientAdapter",
    # RPC
    "SolanaRpcClient",
    "InstructionListener",
    "find_instruction_events",
    "parse_logs_notification",
    # Addresses
    "derive_vault_address",
    "parse_address",
]
