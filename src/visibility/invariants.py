"""Market invariant checks against the fee schedule and deployment config."""

from __future__ import annotations

import json
from pathlib import Path

from visibility.config import PARAMS_FILENAME, default_dir
from visibility.credits.curve import buy_trade_cost, curve_cost
from visibility.errors import VisibilityError
from visibility.identity import ZERO_ADDRESS, normalize_address
from visibility.models.credits import (
    BASE_PRICE,
    CREATOR_FEE,
    FEE_DENOMINATOR,
    MAX_TOTAL_SUPPLY,
    PARTNER_FEE,
    PARTNER_REFERRER_BONUS,
    PROTOCOL_FEE,
    REFERRER_FEE,
)

PARAMS_PATH = default_dir("config") / PARAMS_FILENAME

_ADDRESS_FIELDS = (
    "admin",
    "creators_linker",
    "partners_linker",
    "dispute_resolver",
    "treasury",
    "ledger_address",
    "escrow_address",
)


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_fee_schedule(errors: list[str]) -> None:
    """The protocol share must be able to absorb every referral share."""
    for name, rate in (
        ("CREATOR_FEE", CREATOR_FEE),
        ("PROTOCOL_FEE", PROTOCOL_FEE),
        ("REFERRER_FEE", REFERRER_FEE),
        ("PARTNER_FEE", PARTNER_FEE),
        ("PARTNER_REFERRER_BONUS", PARTNER_REFERRER_BONUS),
    ):
        if not 0 <= rate <= FEE_DENOMINATOR:
            errors.append(f"{name} must be in [0, {FEE_DENOMINATOR}], got {rate}")
    if REFERRER_FEE + PARTNER_REFERRER_BONUS + PARTNER_FEE > PROTOCOL_FEE:
        errors.append(
            "REFERRER_FEE + PARTNER_REFERRER_BONUS + PARTNER_FEE must not exceed PROTOCOL_FEE"
        )
    if CREATOR_FEE + PROTOCOL_FEE >= FEE_DENOMINATOR:
        errors.append("CREATOR_FEE + PROTOCOL_FEE must be below FEE_DENOMINATOR")


def check_curve(errors: list[str]) -> None:
    if curve_cost(0, 1) != BASE_PRICE:
        errors.append("First credit must cost exactly BASE_PRICE")
    try:
        buy_trade_cost(0, MAX_TOTAL_SUPPLY + 1)
    except VisibilityError:
        return
    errors.append("Buying past MAX_TOTAL_SUPPLY must be rejected")


def check_config(params: dict, errors: list[str]) -> None:
    for name in _ADDRESS_FIELDS:
        value = params.get(name)
        if value is None:
            errors.append(f"market_params missing {name}")
            continue
        try:
            if normalize_address(value) == ZERO_ADDRESS:
                errors.append(f"{name} must not be the zero address")
        except VisibilityError:
            errors.append(f"{name} is not a valid address: {value!r}")
    if params.get("ledger_address") == params.get("escrow_address"):
        errors.append("ledger_address and escrow_address must differ")
    delay = params.get("admin_delay_seconds", 0)
    if not isinstance(delay, int) or delay < 0:
        errors.append(f"admin_delay_seconds must be a non-negative integer, got {delay!r}")


def check(params_path: Path = PARAMS_PATH) -> int:
    errors: list[str] = []
    check_fee_schedule(errors)
    check_curve(errors)
    check_config(load_json(params_path), errors)

    if errors:
        print("Invariant check failed:")
        for error in errors:
            print(f"- {error}")
        return 1

    print("Invariant check passed.")
    return 0
