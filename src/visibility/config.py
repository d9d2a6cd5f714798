"""Deployment configuration — who holds which capability, and where value lives.

Loaded from config/market_params.json. Addresses may be overridden from
the environment (or a .env file) so operators can point a deployment at
their own keys without editing the checked-in file:

    ADMIN_ADDRESS, CREATORS_LINKER_ADDRESS, PARTNERS_LINKER_ADDRESS,
    DISPUTE_RESOLVER_ADDRESS, TREASURY_ADDRESS, ADMIN_DELAY_SECONDS

Economic constants (fees, curve) are not configurable; see
visibility.models.credits.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from visibility.identity import require_address

CHECKOUT_ROOT = Path(__file__).resolve().parents[2]
PARAMS_FILENAME = "market_params.json"
DEFAULT_ADMIN_DELAY_SECONDS = 3 * 24 * 60 * 60


def default_dir(name: str) -> Path:
    """Locate a top-level directory such as config/ or data/.

    A source or editable checkout resolves against the repository root.
    An installed copy has no such root, so it falls back to the working
    directory; pass --config and --data to point elsewhere.
    """
    if (CHECKOUT_ROOT / "pyproject.toml").is_file():
        return CHECKOUT_ROOT / name
    return Path.cwd() / name


_ENV_OVERRIDES = {
    "ADMIN_ADDRESS": "admin",
    "CREATORS_LINKER_ADDRESS": "creators_linker",
    "PARTNERS_LINKER_ADDRESS": "partners_linker",
    "DISPUTE_RESOLVER_ADDRESS": "dispute_resolver",
    "TREASURY_ADDRESS": "treasury",
}


@dataclass(frozen=True)
class MarketConfig:
    admin: str
    creators_linker: str
    partners_linker: str
    dispute_resolver: str
    treasury: str
    ledger_address: str
    escrow_address: str
    admin_delay_seconds: int = DEFAULT_ADMIN_DELAY_SECONDS

    def __post_init__(self) -> None:
        for name in (
            "admin",
            "creators_linker",
            "partners_linker",
            "dispute_resolver",
            "treasury",
            "ledger_address",
            "escrow_address",
        ):
            object.__setattr__(self, name, require_address(getattr(self, name)))
        if self.admin_delay_seconds < 0:
            raise ValueError(
                f"admin_delay_seconds must be >= 0, got {self.admin_delay_seconds}"
            )

    @property
    def admin_delay(self) -> timedelta:
        return timedelta(seconds=self.admin_delay_seconds)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketConfig:
        return cls(
            admin=data["admin"],
            creators_linker=data["creators_linker"],
            partners_linker=data["partners_linker"],
            dispute_resolver=data["dispute_resolver"],
            treasury=data["treasury"],
            ledger_address=data["ledger_address"],
            escrow_address=data["escrow_address"],
            admin_delay_seconds=int(
                data.get("admin_delay_seconds", DEFAULT_ADMIN_DELAY_SECONDS)
            ),
        )

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> MarketConfig:
        """Load from <config_dir>/market_params.json."""
        with (config_dir / PARAMS_FILENAME).open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_env(
        cls,
        config_dir: Path,
        dotenv_path: Optional[Path] = None,
    ) -> MarketConfig:
        """Load the JSON file, then apply environment overrides.

        A .env file (dotenv_path, or one found from the working directory)
        is loaded first; variables already set in the process win.
        """
        load_dotenv(dotenv_path)
        config = cls.from_config_dir(config_dir)
        overrides: dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                overrides[field_name] = value
        delay = os.getenv("ADMIN_DELAY_SECONDS")
        if delay:
            overrides["admin_delay_seconds"] = int(delay)
        if not overrides:
            return config
        return replace(config, **overrides)
