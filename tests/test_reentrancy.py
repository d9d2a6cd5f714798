"""Tests for recipient code running during value transfers."""

from datetime import datetime, timezone

import pytest

from visibility.config import MarketConfig
from visibility.errors import InvalidExecutionState, ReentrantCall, TransferFailed
from visibility.identity import normalize_address
from visibility.models.services import ExecutionState
from visibility.service import VisibilityMarket

ETH = 10**18
WEI_COST = 10**16

ADMIN = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
CREATOR = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
USER1 = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
USER2 = "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"
CREATORS_LINKER = "0x9965507D1a55bcC2695C58ba16FB37d819B0A4dc"
PARTNERS_LINKER = "0x976EA74026E726554dB657fA54763abd0C3a0aa9"
TREASURY = "0x14dC79964da2C08b23698B3D3cc7Ca32193d9955"
REFERRER = "0x23618e81E3f5cdF7f54C3d65f7FBc0aBf5B21E8f"
RESOLVER = "0xBcd4042DE499D14e55001CcbB24a551F3b954096"
LEDGER = normalize_address("0x" + "c0" * 20)
ESCROW = normalize_address("0x" + "e5" * 20)

VID = "x-807982663000674305"


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _market() -> VisibilityMarket:
    market = VisibilityMarket(MarketConfig(
        admin=ADMIN,
        creators_linker=CREATORS_LINKER,
        partners_linker=PARTNERS_LINKER,
        dispute_resolver=RESOLVER,
        treasury=TREASURY,
        ledger_address=LEDGER,
        escrow_address=ESCROW,
    ))
    for account in (USER1, USER2, CREATOR):
        market.rail.fund(account, 100 * ETH)
    market.ledger.set_creator_visibility(CREATORS_LINKER, VID, CREATOR, "LucaNetz", now=_now())
    market.ledger.buy_credits(USER1, VID, 10, None, value=ETH, now=_now())
    return market


class TestLedgerHooks:
    def test_reentrant_sell_fails_the_buy(self) -> None:
        market = _market()

        def sell_during_buy(sender: str, amount: int) -> None:
            market.ledger.sell_credits(USER1, VID, 1, now=_now())

        market.rail.set_receive_hook(REFERRER, sell_during_buy)
        balance_before = market.rail.balance_of(USER1)
        events_before = market.event_log.count

        with pytest.raises(TransferFailed):
            market.ledger.buy_credits(USER1, VID, 2, REFERRER, value=ETH, now=_now())

        assert market.rail.balance_of(USER1) == balance_before
        assert market.rail.balance_of(REFERRER) == 0
        assert market.ledger.get_visibility(VID).total_supply == 10
        assert market.ledger.get_user_referrer(USER1) is None
        assert market.event_log.count == events_before

    def test_guard_released_after_failure(self) -> None:
        market = _market()
        market.rail.set_receive_hook(
            REFERRER, lambda sender, amount: market.ledger.sell_credits(USER1, VID, 1)
        )
        with pytest.raises(TransferFailed):
            market.ledger.buy_credits(USER1, VID, 2, REFERRER, value=ETH, now=_now())
        market.rail.set_receive_hook(REFERRER, None)
        market.ledger.buy_credits(USER1, VID, 2, REFERRER, value=ETH, now=_now())
        assert market.ledger.get_visibility(VID).total_supply == 12

    def test_hook_sees_committed_trade(self) -> None:
        market = _market()
        seen = []
        market.rail.set_receive_hook(
            REFERRER,
            lambda sender, amount: seen.append(market.ledger.get_visibility(VID).total_supply),
        )
        market.ledger.buy_credits(USER1, VID, 2, REFERRER, value=ETH, now=_now())
        assert seen == [12]

    def test_caught_reentry_does_not_block_sell(self) -> None:
        market = _market()
        rejected = []

        def buy_during_sell(sender: str, amount: int) -> None:
            try:
                market.ledger.buy_credits(USER1, VID, 1, value=ETH, now=_now())
            except ReentrantCall as e:
                rejected.append(str(e))

        market.rail.set_receive_hook(USER1, buy_during_sell)
        market.ledger.sell_credits(USER1, VID, 3, now=_now())
        assert len(rejected) == 1
        assert market.ledger.get_visibility_credit_balance(VID, USER1) == 7

    def test_claim_cannot_be_repeated_from_hook(self) -> None:
        market = _market()
        claimed = []

        def claim_again(sender: str, amount: int) -> None:
            claimed.append(amount)
            try:
                market.ledger.claim_creator_fee(CREATOR, VID, now=_now())
            except ReentrantCall:
                pass

        market.rail.set_receive_hook(CREATOR, claim_again)
        amount = market.ledger.claim_creator_fee(USER2, VID, now=_now())
        assert claimed == [amount]
        assert market.ledger.get_visibility(VID).claimable_fee_balance == 0


class TestEscrowHooks:
    def test_refund_hook_sees_terminal_state(self) -> None:
        market = _market()
        nonce = market.escrow.create_service_with_eth(
            CREATOR, "x-post", VID, 0, WEI_COST, now=_now()
        )
        execution = market.escrow.request_service_execution(
            USER2, nonce, "please", value=WEI_COST, now=_now()
        )
        observed = []

        def cancel_again(sender: str, amount: int) -> None:
            observed.append(market.escrow.get_service_execution(nonce, execution).state)
            try:
                market.escrow.cancel_service_execution(USER2, nonce, execution, "", now=_now())
            except InvalidExecutionState:
                observed.append("rejected")

        market.rail.set_receive_hook(USER2, cancel_again)
        before = market.rail.balance_of(USER2)
        market.escrow.cancel_service_execution(USER2, nonce, execution, "", now=_now())

        assert observed == [ExecutionState.REFUNDED, "rejected"]
        assert market.rail.balance_of(USER2) == before + WEI_COST
        assert market.rail.balance_of(ESCROW) == 0

    def test_failing_creator_hook_keeps_execution_accepted(self) -> None:
        market = _market()
        nonce = market.escrow.create_service_with_eth(
            CREATOR, "x-post", VID, 0, WEI_COST, now=_now()
        )
        execution = market.escrow.request_service_execution(
            USER1, nonce, "please", value=WEI_COST, now=_now()
        )
        market.escrow.accept_service_execution(CREATOR, nonce, execution, "ok", now=_now())

        def refuse(sender: str, amount: int) -> None:
            market.escrow.cancel_service_execution(CREATOR, nonce, execution, "", now=_now())

        market.rail.set_receive_hook(CREATOR, refuse)
        with pytest.raises(TransferFailed):
            market.escrow.validate_service_execution(USER1, nonce, execution, now=_now())
        state = market.escrow.get_service_execution(nonce, execution).state
        assert state == ExecutionState.ACCEPTED
        assert market.rail.balance_of(ESCROW) == WEI_COST
