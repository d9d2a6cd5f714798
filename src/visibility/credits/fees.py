"""Fee policy — splits a trade cost between creator, protocol and referral parties.

Given the curve cost of a trade:

    creator_fee  = cost × CREATOR_FEE / DENOM
    with partner:   partner_fee  = cost × PARTNER_FEE / DENOM
                    referrer_fee = cost × (REFERRER_FEE + PARTNER_REFERRER_BONUS) / DENOM
    referrer only:  referrer_fee = cost × REFERRER_FEE / DENOM,  partner_fee = 0
    neither:        referrer_fee = partner_fee = 0
    protocol_fee = cost × PROTOCOL_FEE / DENOM − referrer_fee − partner_fee

The protocol absorbs the referral shares, so the protocol-side take is the
same whether or not a referrer is involved. Every division floors. The
per-stage rounding residual is kept as is; totals are always defined as
sums of the rounded parts so the closure identities hold exactly.

Pure functions. No state — the ledger supplies referral lookups.
"""

from __future__ import annotations

from typing import Mapping, Optional, Tuple

from visibility.models.credits import (
    CREATOR_FEE,
    FEE_DENOMINATOR,
    PARTNER_FEE,
    PARTNER_REFERRER_BONUS,
    PROTOCOL_FEE,
    REFERRER_FEE,
    CreditsTradeQuote,
)


def resolve_referral(
    user: str,
    referrer: Optional[str],
    user_referrers: Mapping[str, str],
    referrer_partners: Mapping[str, str],
) -> Tuple[Optional[str], Optional[str]]:
    """Return the effective (referrer, partner) for a trade.

    An explicit referrer wins; otherwise the user's remembered referrer
    is used. The partner is whoever the effective referrer is linked to.
    """
    effective = referrer if referrer is not None else user_referrers.get(user)
    if effective is None:
        return None, None
    return effective, referrer_partners.get(effective)


def compute_fees(
    trade_cost: int,
    referrer: Optional[str] = None,
    partner: Optional[str] = None,
) -> CreditsTradeQuote:
    """Split a trade cost into the four fee shares."""
    creator_fee = trade_cost * CREATOR_FEE // FEE_DENOMINATOR

    if referrer is not None and partner is not None:
        partner_fee = trade_cost * PARTNER_FEE // FEE_DENOMINATOR
        referrer_fee = (
            trade_cost * (REFERRER_FEE + PARTNER_REFERRER_BONUS) // FEE_DENOMINATOR
        )
    elif referrer is not None:
        partner = None
        partner_fee = 0
        referrer_fee = trade_cost * REFERRER_FEE // FEE_DENOMINATOR
    else:
        partner = None
        partner_fee = 0
        referrer_fee = 0

    protocol_fee = (
        trade_cost * PROTOCOL_FEE // FEE_DENOMINATOR - referrer_fee - partner_fee
    )

    return CreditsTradeQuote(
        trade_cost=trade_cost,
        creator_fee=creator_fee,
        protocol_fee=protocol_fee,
        referrer_fee=referrer_fee,
        partner_fee=partner_fee,
        referrer=referrer,
        partner=partner,
    )
