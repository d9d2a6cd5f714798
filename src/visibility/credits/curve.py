"""Bonding-curve pricer — closed-form cost of a supply range.

The marginal price of the unit minted at supply s is

    price(s) = BASE_PRICE + A·s² + B·s

and the cost of trading `amount` units starting at `from_supply` is the
sum of that price over the half-open range [from_supply, from_supply + amount):

    cost = BASE_PRICE·amount + A·Σk² + B·Σk

Σk² and Σk are computed with the standard identities, never by iterating,
since amount may be very large. Ranges starting at zero use the sums up to
the last unit directly; all others subtract the sums up to from_supply − 1.

Pure functions. No state.
"""

from __future__ import annotations

from visibility.errors import InvalidAmount, NotEnoughCreditsOwned
from visibility.models.credits import A, B, BASE_PRICE, MAX_TOTAL_SUPPLY


def sum_of_squares(n: int) -> int:
    """0² + 1² + ... + n²."""
    return n * (n + 1) * (2 * n + 1) // 6


def sum_of_integers(n: int) -> int:
    """0 + 1 + ... + n."""
    return n * (n + 1) // 2


def price_at(supply: int) -> int:
    """Marginal price of the unit minted when supply is `supply`."""
    return BASE_PRICE + A * supply * supply + B * supply


def curve_cost(from_supply: int, amount: int) -> int:
    """Cost of `amount` units over [from_supply, from_supply + amount)."""
    if from_supply < 0 or amount < 0:
        raise InvalidAmount("Supply and amount must be non-negative")
    if amount == 0:
        return 0

    last = from_supply + amount - 1
    if from_supply == 0:
        squares = sum_of_squares(last)
        integers = sum_of_integers(last)
    else:
        squares = sum_of_squares(last) - sum_of_squares(from_supply - 1)
        integers = sum_of_integers(last) - sum_of_integers(from_supply - 1)

    return BASE_PRICE * amount + A * squares + B * integers


def buy_trade_cost(total_supply: int, amount: int) -> int:
    """Curve cost of minting `amount` more units.

    Raises InvalidAmount for a zero amount or one that would push supply
    past MAX_TOTAL_SUPPLY.
    """
    if amount <= 0:
        raise InvalidAmount("Amount must be positive")
    if total_supply + amount > MAX_TOTAL_SUPPLY:
        raise InvalidAmount(
            f"Buying {amount} would exceed max total supply {MAX_TOTAL_SUPPLY}"
        )
    return curve_cost(total_supply, amount)


def sell_trade_cost(total_supply: int, balance: int, amount: int) -> int:
    """Curve cost of burning `amount` units held by a seller with `balance`."""
    if amount <= 0:
        raise InvalidAmount("Amount must be positive")
    if balance < amount:
        raise NotEnoughCreditsOwned(balance, amount)
    return curve_cost(total_supply - amount, amount)
