"""Identity helpers — account addresses and entity key hashing.

Accounts are 20-byte EVM-style addresses held in checksum form. The
all-zero address stands for "unset". Entity keys are free-form strings
(e.g. "x-807982663000674305") addressed internally by their keccak-256
hash, so two spellings of the same key can never alias different records.
"""

from __future__ import annotations

from typing import Optional

from web3 import Web3

from visibility.errors import InputError, InvalidAddress

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(address: str) -> str:
    """Return the checksum form of an address.

    Raises InvalidAddress for anything that is not a well-formed address.
    The zero address is accepted here; use require_address() where an
    identity is mandatory.
    """
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddress(f"Not a valid address: {address!r}")
    return Web3.to_checksum_address(address)


def require_address(address: Optional[str]) -> str:
    """Normalize an address that must be set (non-zero)."""
    if address is None:
        raise InvalidAddress("Address is required")
    normalized = normalize_address(address)
    if normalized == ZERO_ADDRESS:
        raise InvalidAddress("Zero address is not allowed here")
    return normalized


def optional_address(address: Optional[str]) -> Optional[str]:
    """Normalize an optional address; None and the zero address mean unset."""
    if address is None:
        return None
    normalized = normalize_address(address)
    if normalized == ZERO_ADDRESS:
        return None
    return normalized


def visibility_hash(visibility_id: str) -> str:
    """keccak-256 of the entity key, as 0x-prefixed hex."""
    if not isinstance(visibility_id, str) or not visibility_id:
        raise InputError("Visibility id must be a non-empty string")
    return "0x" + bytes(Web3.keccak(text=visibility_id)).hex()
