"""Tests for the bonding-curve pricer — closed form, bounds and monotonicity."""

import pytest

from visibility.credits.curve import (
    buy_trade_cost,
    curve_cost,
    price_at,
    sell_trade_cost,
    sum_of_integers,
    sum_of_squares,
)
from visibility.errors import InvalidAmount, NotEnoughCreditsOwned
from visibility.models.credits import A, B, BASE_PRICE, MAX_TOTAL_SUPPLY


def _iterative_cost(from_supply: int, amount: int) -> int:
    return sum(price_at(s) for s in range(from_supply, from_supply + amount))


class TestSums:
    def test_sum_of_squares(self) -> None:
        for n in range(30):
            assert sum_of_squares(n) == sum(k * k for k in range(n + 1))

    def test_sum_of_integers(self) -> None:
        for n in range(30):
            assert sum_of_integers(n) == sum(range(n + 1))


class TestCurveCost:
    def test_first_credit_costs_base_price(self) -> None:
        assert curve_cost(0, 1) == BASE_PRICE
        assert buy_trade_cost(0, 1) == BASE_PRICE

    def test_zero_amount_costs_nothing(self) -> None:
        assert curve_cost(7, 0) == 0

    def test_closed_form_matches_iteration(self) -> None:
        for from_supply in range(0, 25):
            for amount in range(1, 25):
                assert curve_cost(from_supply, amount) == _iterative_cost(from_supply, amount), (
                    f"from={from_supply} amount={amount}"
                )

    def test_known_value_six_from_zero(self) -> None:
        # Σk² over 0..5 = 55, Σk over 0..5 = 15
        assert curve_cost(0, 6) == 6 * BASE_PRICE + A * 55 + B * 15

    def test_ranges_compose(self) -> None:
        assert curve_cost(0, 10) == curve_cost(0, 4) + curve_cost(4, 6)

    def test_large_amount_is_closed_form(self) -> None:
        n = 10**12
        cost = curve_cost(0, n)
        assert cost == BASE_PRICE * n + A * sum_of_squares(n - 1) + B * sum_of_integers(n - 1)

    def test_negative_inputs_rejected(self) -> None:
        with pytest.raises(InvalidAmount):
            curve_cost(-1, 1)
        with pytest.raises(InvalidAmount):
            curve_cost(0, -1)


class TestMonotonicPricing:
    def test_strictly_increasing_in_amount(self) -> None:
        for from_supply in (0, 1, 17, 1000):
            costs = [curve_cost(from_supply, amount) for amount in range(1, 40)]
            assert all(a < b for a, b in zip(costs, costs[1:]))

    def test_non_decreasing_in_from_supply(self) -> None:
        for amount in (1, 2, 9):
            costs = [curve_cost(s, amount) for s in range(0, 60)]
            assert all(a <= b for a, b in zip(costs, costs[1:]))


class TestBuyBounds:
    def test_zero_amount_rejected(self) -> None:
        with pytest.raises(InvalidAmount):
            buy_trade_cost(0, 0)

    def test_max_supply_reachable(self) -> None:
        assert buy_trade_cost(0, MAX_TOTAL_SUPPLY) > 0

    def test_exceeding_max_supply_rejected(self) -> None:
        with pytest.raises(InvalidAmount):
            buy_trade_cost(2, 2**64 - 2)
        with pytest.raises(InvalidAmount):
            buy_trade_cost(0, 2**64)


class TestSellCost:
    def test_sell_prices_top_of_curve(self) -> None:
        # Supply 6, sell 4: units 2..5 are burned.
        assert sell_trade_cost(6, 6, 4) == curve_cost(2, 4)

    def test_buy_then_sell_same_amount_same_cost(self) -> None:
        bought = buy_trade_cost(10, 5)
        assert sell_trade_cost(15, 5, 5) == bought

    def test_sell_zero_rejected(self) -> None:
        with pytest.raises(InvalidAmount):
            sell_trade_cost(5, 5, 0)

    def test_sell_more_than_balance_rejected(self) -> None:
        with pytest.raises(NotEnoughCreditsOwned) as exc:
            sell_trade_cost(10, 3, 4)
        assert exc.value.owned == 3
        assert exc.value.required == 4
