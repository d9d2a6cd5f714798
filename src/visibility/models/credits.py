"""Credit models — entity records, trade quotes and the ledger state struct.

All amounts are integers: credits are whole units, currency is wei.
Fee rates are parts-per-million of the trade cost. No floats in finance.

Invariants enforced by the ledger on these records:
- total_supply == sum(balances.values()) for every entity
- balances and total_supply are never negative
- claimable_fee_balance only grows through trades and is zeroed on claim
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from visibility.errors import NotEnoughCreditsOwned


# Fee schedule (ppm)
FEE_DENOMINATOR = 1_000_000
CREATOR_FEE = 20_000
PROTOCOL_FEE = 30_000
REFERRER_FEE = 10_000
PARTNER_FEE = 2_500
PARTNER_REFERRER_BONUS = 2_500

# Bonding curve: price(s) = BASE_PRICE + A·s² + B·s (wei)
BASE_PRICE = 10_000_000_000_000
A = 15_000_000_000
B = 25_000_000_000

# Bounds the cubic term of the closed-form cost.
MAX_TOTAL_SUPPLY = 2**64 - 1


@dataclass(frozen=True)
class CreditsTradeQuote:
    """Cost breakdown for one buy or sell.

    Ephemeral: produced by the pricer and fee policy, consumed
    immediately by the ledger, never stored.

    Invariant: creator_fee + protocol_fee + referrer_fee + partner_fee <= trade_cost
    """
    trade_cost: int
    creator_fee: int
    protocol_fee: int
    referrer_fee: int
    partner_fee: int
    referrer: Optional[str] = None
    partner: Optional[str] = None

    @property
    def total_fees(self) -> int:
        return self.creator_fee + self.protocol_fee + self.referrer_fee + self.partner_fee

    @property
    def buy_total(self) -> int:
        """Amount a buyer must send."""
        return self.trade_cost + self.total_fees

    @property
    def sell_reimbursement(self) -> int:
        """Amount paid out to a seller."""
        return self.trade_cost - self.total_fees


@dataclass
class VisibilityRecord:
    """One entity's credits: creator link, supply, holder balances, fees owed.

    Mutable — the ledger updates it in place inside a transaction.
    """
    visibility_id: str
    creator: Optional[str] = None
    metadata: str = ""
    total_supply: int = 0
    claimable_fee_balance: int = 0
    balances: Dict[str, int] = field(default_factory=dict)

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def credit(self, account: str, amount: int) -> None:
        self.balances[account] = self.balance_of(account) + amount

    def debit(self, account: str, amount: int) -> None:
        remaining = self.balance_of(account) - amount
        if remaining < 0:
            raise NotEnoughCreditsOwned(self.balance_of(account), amount)
        if remaining == 0:
            self.balances.pop(account, None)
        else:
            self.balances[account] = remaining


@dataclass(frozen=True)
class VisibilityView:
    """Read-only projection of an entity for collaborators."""
    creator: Optional[str]
    total_supply: int
    claimable_fee_balance: int
    metadata: str = ""


@dataclass
class LedgerState:
    """Everything the credit ledger persists.

    visibilities is keyed by the keccak hash of the entity key.
    """
    treasury: str
    visibilities: Dict[str, VisibilityRecord] = field(default_factory=dict)
    referrer_partners: Dict[str, str] = field(default_factory=dict)
    user_referrers: Dict[str, str] = field(default_factory=dict)
