"""Tests for VisibilityMarket — proves the facade orchestrates correctly."""

import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest

from visibility.config import MarketConfig
from visibility.models.services import PaymentType
from visibility.persistence.event_log import EventKind, EventLog
from visibility.persistence.state_store import StateStore
from visibility.service import VisibilityMarket


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

ETH = 10**18
ADMIN = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
CREATORS_LINKER = "0x9965507D1a55bcC2695C58ba16FB37d819B0A4dc"
RESOLVER = "0xBcd4042DE499D14e55001CcbB24a551F3b954096"
CREATOR = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
USER1 = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
USER2 = "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"
NEW_TREASURY = "0x23618e81E3f5cdF7f54C3d65f7FBc0aBf5B21E8f"

VID = "x-807982663000674305"


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def config() -> MarketConfig:
    return MarketConfig.from_config_dir(CONFIG_DIR)


@pytest.fixture
def market(config: MarketConfig) -> VisibilityMarket:
    return VisibilityMarket(config)


def _seed(market: VisibilityMarket) -> None:
    for account in (USER1, USER2, CREATOR):
        assert market.fund(account, 100 * ETH, now=_now()).success
    assert market.link_creator(CREATORS_LINKER, VID, CREATOR, "LucaNetz", now=_now()).success
    assert market.buy(USER1, VID, 100, value=ETH, now=_now()).success


class TestLedgerOperations:
    def test_fund(self, market: VisibilityMarket) -> None:
        result = market.fund(USER1, ETH, now=_now())
        assert result.success
        assert result.data["balance"] == ETH
        assert market.event_log.events(EventKind.NATIVE_FUNDED)[0].payload["amount"] == ETH

    def test_fund_invalid_address(self, market: VisibilityMarket) -> None:
        result = market.fund("0x1234", ETH)
        assert not result.success
        assert market.event_log.count == 0

    def test_quote_matches_buy(self, market: VisibilityMarket) -> None:
        market.fund(USER1, ETH, now=_now())
        quote = market.quote(VID, 5, USER1)
        assert quote.success
        assert quote.data["side"] == "buy"
        result = market.buy(USER1, VID, 5, value=quote.data["total"], now=_now())
        assert result.success
        assert result.data["total"] == quote.data["total"]
        assert result.data["balance"] == 5

    def test_quote_rejects_zero(self, market: VisibilityMarket) -> None:
        assert not market.quote(VID, 0, USER1).success

    def test_sell_quote(self, market: VisibilityMarket) -> None:
        _seed(market)
        quote = market.quote(VID, 10, USER1, sell=True)
        result = market.sell(USER1, VID, 10, now=_now())
        assert result.success
        assert result.data["reimbursement"] == quote.data["total"]
        assert result.data["balance"] == 90

    def test_claim_fee(self, market: VisibilityMarket) -> None:
        _seed(market)
        result = market.claim_fee(USER2, VID, now=_now())
        assert result.success
        assert result.data["amount"] > 0
        assert not market.claim_fee(USER2, VID, now=_now()).success

    def test_update_treasury(self, market: VisibilityMarket) -> None:
        result = market.update_treasury(ADMIN, NEW_TREASURY, now=_now())
        assert result.success
        assert result.data["treasury"] == NEW_TREASURY
        assert not market.update_treasury(USER1, NEW_TREASURY).success

    def test_set_partner(self, market: VisibilityMarket, config: MarketConfig) -> None:
        result = market.set_partner(config.partners_linker, USER1, USER2, now=_now())
        assert result.success
        assert result.data["partner"] == USER2


class TestRejection:
    def test_rejected_operation_leaves_no_trace(self, market: VisibilityMarket) -> None:
        _seed(market)
        events_before = market.event_log.count
        supply_before = market.ledger.get_visibility(VID).total_supply
        result = market.buy(USER2, VID, 5, value=1, now=_now())
        assert not result.success
        assert "required" in result.errors[0]
        assert market.event_log.count == events_before
        assert market.ledger.get_visibility(VID).total_supply == supply_before

    def test_unauthorized_link(self, market: VisibilityMarket) -> None:
        result = market.link_creator(USER1, VID, USER1)
        assert not result.success
        assert "missing role" in result.errors[0]

    def test_rejection_logged(
        self, market: VisibilityMarket, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="visibility.service"):
            market.link_creator(USER1, VID, USER1)
        assert "link_creator rejected" in caplog.text


class TestEscrowOperations:
    def test_credits_service_flow(self, market: VisibilityMarket) -> None:
        _seed(market)
        created = market.create_service(CREATOR, "x-post", VID, 20, now=_now())
        assert created.data == {"service_nonce": 0, "payment_type": "credits"}

        request = market.request(USER1, 0, "repost please", now=_now())
        assert request.data["execution_nonce"] == 0
        assert market.add_information(CREATOR, 0, 0, "link?", now=_now()).success
        assert market.accept(CREATOR, 0, 0, "done", now=_now()).data["state"] == "accepted"
        assert market.validate(USER1, 0, 0, now=_now()).data["state"] == "validated"
        assert market.ledger.get_visibility_credit_balance(VID, CREATOR) == 20

    def test_dispute_flow(self, market: VisibilityMarket) -> None:
        _seed(market)
        market.create_service(CREATOR, "x-post", VID, 20, now=_now())
        market.request(USER1, 0, "repost please", now=_now())
        market.accept(CREATOR, 0, 0, "done", now=_now())
        assert market.dispute(USER1, 0, 0, "not done", now=_now()).data["state"] == "disputed"
        assert not market.resolve(USER1, 0, 0, True, "", now=_now()).success
        result = market.resolve(RESOLVER, 0, 0, True, "refund", now=_now())
        assert result.data["state"] == "refunded"
        assert market.ledger.get_visibility_credit_balance(VID, USER1) == 100

    def test_cancel(self, market: VisibilityMarket) -> None:
        _seed(market)
        market.create_service(CREATOR, "x-post", VID, 20, now=_now())
        market.request(USER1, 0, "", now=_now())
        assert market.cancel(USER1, 0, 0, "", now=_now()).data["state"] == "refunded"

    def test_update_and_reprice(self, market: VisibilityMarket) -> None:
        _seed(market)
        market.create_service(CREATOR, "x-post", VID, 20, now=_now())
        assert market.update_service(CREATOR, 0, False, now=_now()).success
        assert not market.request(USER1, 0, "", now=_now()).success
        result = market.reprice_service(CREATOR, 0, 30, now=_now())
        assert result.data == {"previous_service_nonce": 0, "service_nonce": 1}

    def test_currency_service_and_buy_back(self, market: VisibilityMarket) -> None:
        _seed(market)
        created = market.create_service(
            CREATOR, "x-post", VID, 10**16,
            payment_type=PaymentType.CURRENCY, buy_back_credits_share=500_000, now=_now(),
        )
        assert created.success
        market.request(USER1, 0, "", value=10**16, now=_now())
        market.accept(CREATOR, 0, 0, "", now=_now())
        market.validate(USER1, 0, 0, now=_now())

        result = market.buy_back(CREATOR, VID, 1, 10**16, now=_now())
        assert result.success
        assert result.data["pool_balance"] == 5 * 10**15 - result.data["wei_amount"]


class TestStatus:
    def test_status(self, market: VisibilityMarket) -> None:
        _seed(market)
        market.create_service(CREATOR, "x-post", VID, 20, now=_now())
        market.request(USER1, 0, "", now=_now())
        status = market.status()
        assert status["ledger"]["entities"] == 1
        assert status["ledger"]["total_supply"] == 100
        assert status["escrow"]["services"] == 1
        assert status["escrow"]["executions"]["requested"] == 1
        assert status["native"]["total_balance"] == 300 * ETH
        assert status["persistence_degraded"] is False


class TestPersistence:
    def _market(self, config: MarketConfig, data_dir: Path) -> VisibilityMarket:
        return VisibilityMarket(
            config,
            event_log=EventLog(storage_path=data_dir / "events.jsonl"),
            state_store=StateStore(storage_path=data_dir / "state.json"),
        )

    def test_state_survives_restart(self, config: MarketConfig, tmp_path: Path) -> None:
        market = self._market(config, tmp_path)
        _seed(market)
        market.create_service(CREATOR, "x-post", VID, 20, now=_now())
        market.request(USER1, 0, "", now=_now())

        restarted = self._market(config, tmp_path)
        assert restarted.ledger.get_visibility_credit_balance(VID, USER1) == 80
        assert restarted.escrow.execution_count(0) == 1
        assert restarted.rail.balance_of(USER2) == 100 * ETH
        assert restarted.event_log.count == market.event_log.count
        assert restarted.accept(CREATOR, 0, 0, "", now=_now()).success

    def test_roles_survive_restart(self, config: MarketConfig, tmp_path: Path) -> None:
        market = self._market(config, tmp_path)
        market.update_treasury(ADMIN, NEW_TREASURY, now=_now())
        restarted = self._market(config, tmp_path)
        assert restarted.ledger.get_protocol_treasury() == NEW_TREASURY

    def test_state_store_failure_degrades(self, config: MarketConfig, tmp_path: Path) -> None:
        market = VisibilityMarket(
            config, state_store=StateStore(storage_path=tmp_path / "missing" / "state.json")
        )
        result = market.fund(USER1, ETH, now=_now())
        assert result.success
        assert "Persistence degraded" in result.data["warning"]
        assert market.persistence_degraded
        assert market.status()["persistence_degraded"] is True

    def test_event_log_failure_fails_operation(
        self, config: MarketConfig, tmp_path: Path
    ) -> None:
        market = VisibilityMarket(
            config, event_log=EventLog(storage_path=tmp_path / "missing" / "events.jsonl")
        )
        result = market.fund(USER1, ETH, now=_now())
        assert not result.success
        assert "Event log failure" in result.errors[0]
        assert market.persistence_degraded
        assert market.rail.balance_of(USER1) == 0
        assert market.event_log.count == 0

    def test_event_log_failure_rolls_back_trade(
        self, config: MarketConfig, tmp_path: Path
    ) -> None:
        market = VisibilityMarket(
            config, event_log=EventLog(storage_path=tmp_path / "missing" / "events.jsonl")
        )
        market.rail.fund(USER1, ETH)
        result = market.buy(USER1, VID, 5, value=ETH, now=_now())
        assert not result.success
        assert market.rail.balance_of(USER1) == ETH
        assert market.rail.balance_of(config.treasury) == 0
        assert market.ledger.get_visibility_credit_balance(VID, USER1) == 0
        assert market.ledger.get_visibility(VID).total_supply == 0
        assert market.event_log.count == 0
        assert market.event_log.events(EventKind.CREDITS_TRADE) == []
