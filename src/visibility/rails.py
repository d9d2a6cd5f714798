"""Native-currency rail — how wei moves between accounts.

The ledger and escrow never hold a balance table for currency themselves;
they move value through a rail that satisfies the ValueTransfer protocol.
Swapping the in-memory rail for a chain-backed one requires no change to
ledger or escrow code.

NativeRail keeps balances in memory and can invoke a receive hook on the
recipient after funds land, modelling recipient code that runs during a
transfer. A hook that raises a VisibilityError fails the transfer.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from visibility.errors import (
    InsufficientFunds,
    InvalidAmount,
    TransferFailed,
    VisibilityError,
)
from visibility.identity import require_address

ReceiveHook = Callable[[str, int], None]


@runtime_checkable
class ValueTransfer(Protocol):
    """Contract every currency rail implements."""

    @property
    def rail_id(self) -> str:
        ...

    def balance_of(self, account: str) -> int:
        ...

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        ...


class NativeRail:
    """In-memory wei balances with optional receive hooks.

    Usage:
        rail = NativeRail()
        rail.fund(alice, 10**18)
        rail.transfer(alice, bob, 5 * 10**17)
    """

    def __init__(self, rail_id: str = "native") -> None:
        self._rail_id = rail_id
        self._balances: Dict[str, int] = {}
        self._hooks: Dict[str, ReceiveHook] = {}

    @property
    def rail_id(self) -> str:
        return self._rail_id

    def balance_of(self, account: str) -> int:
        return self._balances.get(require_address(account), 0)

    def total_balance(self) -> int:
        return sum(self._balances.values())

    def fund(self, account: str, amount: int) -> None:
        """Credit new currency to an account (initial allocation, faucet)."""
        if amount <= 0:
            raise InvalidAmount("Funding amount must be positive")
        account = require_address(account)
        self._balances[account] = self._balances.get(account, 0) + amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Move `amount` wei, then run the recipient's hook if any.

        Zero-value transfers are no-ops and do not trigger hooks.
        """
        if amount < 0:
            raise InvalidAmount("Transfer amount must be non-negative")
        sender = require_address(sender)
        recipient = require_address(recipient)
        if amount == 0:
            return
        available = self._balances.get(sender, 0)
        if available < amount:
            raise InsufficientFunds(
                f"{sender} holds {available} wei, cannot send {amount} wei"
            )
        self._balances[sender] = available - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount

        hook = self._hooks.get(recipient)
        if hook is not None:
            try:
                hook(sender, amount)
            except VisibilityError as e:
                raise TransferFailed(
                    f"Transfer of {amount} wei to {recipient} failed: {e}"
                ) from e

    def set_receive_hook(self, account: str, hook: Optional[ReceiveHook]) -> None:
        account = require_address(account)
        if hook is None:
            self._hooks.pop(account, None)
        else:
            self._hooks[account] = hook

    # Participant protocol

    def snapshot(self) -> Dict[str, int]:
        return dict(self._balances)

    def restore(self, snapshot: Dict[str, int]) -> None:
        self._balances = dict(snapshot)

    # Persistence

    def balances(self) -> Dict[str, int]:
        return dict(self._balances)

    def load_balances(self, balances: Dict[str, int]) -> None:
        self._balances = {require_address(a): int(v) for a, v in balances.items()}
