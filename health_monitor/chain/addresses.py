"""
Address helpers - validation and program-derived addresses.
"""

from solders.pubkey import Pubkey

from ..exceptions import InvalidAddressError


VAULT_SEED = b"vault"


def parse_address(address: str) -> Pubkey:
    """
    Parse a base58 public key.

    Raises:
        InvalidAddressError: If the text is not a 32-byte base58 key
    """
    try:
        return Pubkey.from_string(address.strip())
    except ValueError as e:
        raise InvalidAddressError(address) from e


def derive_vault_address(owner: str, program_id: str) -> str:
    """Vault PDA for `owner`: seeds [b"vault", owner] under the protocol program."""
    vault, _bump = Pubkey.find_program_address(
        [VAULT_SEED, bytes(parse_address(owner))],
        parse_address(program_id),
    )
    return str(vault)
