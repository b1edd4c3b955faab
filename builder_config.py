from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from pricing_engine import ADDITIONAL_DRIVER_FEE, UNDERAGE_DRIVER_FEE, FallbackRates, to_money

AGREEMENT_STORAGE_KEY = "enhanced-agreement-wizard"
RESERVATION_STORAGE_KEY = "new-reservation-draft"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class BuilderConfig:
    draft_dir: Path = Path(".drafts")
    autosave_delay_seconds: float = 1.0
    agreement_storage_key: str = AGREEMENT_STORAGE_KEY
    reservation_storage_key: str = RESERVATION_STORAGE_KEY
    fallback_rates: FallbackRates = field(default_factory=FallbackRates)
    additional_driver_fee: Decimal = ADDITIONAL_DRIVER_FEE
    underage_driver_fee: Decimal = UNDERAGE_DRIVER_FEE
    log_level: str = "INFO"


def load_environment(dotenv_path: Optional[Path] = None) -> bool:
    """
    Load `.env` from the working directory (or `dotenv_path`) into os.environ. Existing variables win.
    """
    return load_dotenv(dotenv_path=dotenv_path or (Path.cwd() / ".env"), override=False)


def _read_json_file(path: Path) -> Dict[str, object]:
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a JSON object: {path}")
    return data


def _as_optional_str(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    v = value.strip()
    return v if v else None


def _as_money(value: object, key: str, default: Decimal) -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise ValueError(f"Config key `{key}` must be a number")
    try:
        amount = to_money(value if not isinstance(value, str) else value.strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Config key `{key}` must be a number (got {value!r})") from e
    if amount < 0:
        raise ValueError(f"Config key `{key}` cannot be negative")
    return amount


def _as_delay(value: object, key: str) -> float:
    if value is None or value == "":
        return 1.0
    try:
        delay = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ValueError(f"Config key `{key}` must be a number of seconds (got {value!r})") from e
    if delay < 0:
        raise ValueError(f"Config key `{key}` cannot be negative")
    return delay


def _as_log_level(value: object) -> str:
    level = (_as_optional_str(value) or "INFO").upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"Unknown log level: {level}")
    return level


def _fallback_rates(raw: Mapping[str, object], prefix: str = "") -> FallbackRates:
    base = FallbackRates()
    return FallbackRates(
        hourly=_as_money(raw.get(f"{prefix}hourly"), f"{prefix}hourly", base.hourly),
        daily=_as_money(raw.get(f"{prefix}daily"), f"{prefix}daily", base.daily),
        weekly=_as_money(raw.get(f"{prefix}weekly"), f"{prefix}weekly", base.weekly),
        monthly=_as_money(raw.get(f"{prefix}monthly"), f"{prefix}monthly", base.monthly),
    )


def load_config(config_path: Path) -> BuilderConfig:
    raw = _read_json_file(config_path)
    rates = raw.get("fallback_rates", {})
    if not isinstance(rates, dict):
        raise ValueError("Config key `fallback_rates` must be an object")
    draft_dir = _as_optional_str(raw.get("draft_dir"))
    return BuilderConfig(
        draft_dir=Path(draft_dir) if draft_dir else Path(".drafts"),
        autosave_delay_seconds=_as_delay(raw.get("autosave_delay_seconds"), "autosave_delay_seconds"),
        agreement_storage_key=_as_optional_str(raw.get("agreement_storage_key")) or AGREEMENT_STORAGE_KEY,
        reservation_storage_key=_as_optional_str(raw.get("reservation_storage_key")) or RESERVATION_STORAGE_KEY,
        fallback_rates=_fallback_rates(rates),
        additional_driver_fee=_as_money(raw.get("additional_driver_fee"), "additional_driver_fee", ADDITIONAL_DRIVER_FEE),
        underage_driver_fee=_as_money(raw.get("underage_driver_fee"), "underage_driver_fee", UNDERAGE_DRIVER_FEE),
        log_level=_as_log_level(raw.get("log_level")),
    )


def load_config_from_env() -> BuilderConfig:
    """
    Loads config from environment variables (after dotenv is loaded).
    """
    env = os.environ
    draft_dir = _as_optional_str(env.get("DRAFT_DIR"))
    rates = {
        "hourly": env.get("FALLBACK_HOURLY_RATE"),
        "daily": env.get("FALLBACK_DAILY_RATE"),
        "weekly": env.get("FALLBACK_WEEKLY_RATE"),
        "monthly": env.get("FALLBACK_MONTHLY_RATE"),
    }
    return BuilderConfig(
        draft_dir=Path(draft_dir) if draft_dir else Path(".drafts"),
        autosave_delay_seconds=_as_delay(env.get("AUTOSAVE_DELAY_SECONDS"), "AUTOSAVE_DELAY_SECONDS"),
        agreement_storage_key=_as_optional_str(env.get("AGREEMENT_STORAGE_KEY")) or AGREEMENT_STORAGE_KEY,
        reservation_storage_key=_as_optional_str(env.get("RESERVATION_STORAGE_KEY")) or RESERVATION_STORAGE_KEY,
        fallback_rates=_fallback_rates(rates),
        additional_driver_fee=_as_money(env.get("ADDITIONAL_DRIVER_FEE"), "ADDITIONAL_DRIVER_FEE", ADDITIONAL_DRIVER_FEE),
        underage_driver_fee=_as_money(env.get("UNDERAGE_DRIVER_FEE"), "UNDERAGE_DRIVER_FEE", UNDERAGE_DRIVER_FEE),
        log_level=_as_log_level(env.get("LOG_LEVEL")),
    )


def configure_logging(level: str = "INFO") -> None:
    """
    Root logging setup for scripts and the app. Safe to call repeatedly; only the level changes after the first call.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
