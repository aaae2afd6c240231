"""
config.py - Game settings

Settings come from three layers, later layers winning:
1. Defaults on GameSettings
2. A YAML file (missing file -> defaults)
3. GAMELEDGER_* environment variables, after loading a .env file

Example gameledger.yaml:

    starting_balance: 10000
    monthly_award: 250
    end_of_year_award: 5000
    tick_interval_seconds: 3600
    store_path: data/game.json
    log_level: INFO
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional
import logging
import os

import yaml
from dotenv import load_dotenv

from .core import to_decimal

logger = logging.getLogger(__name__)

ENV_PREFIX = "GAMELEDGER_"


@dataclass(frozen=True, slots=True)
class GameSettings:
    """
    Attributes:
        starting_balance: Balance of a new account and the year-end floor
        monthly_award: Paid to each monthly winner, else rolled into the prize pool
        end_of_year_award: Paid to each account tied at the top balance at year end
        tick_interval_seconds: Settlement engine heartbeat period
        api_cooldown_seconds: How long quotes stay paused after a rate limit
        fmp_api_key: Financial Modeling Prep API key (None -> static quotes)
        store_path: JSON snapshot path (None -> in-memory store)
        log_level: Root log level
        log_file: Optional JSON-lines log file
    """
    starting_balance: Decimal = Decimal("10000")
    monthly_award: Decimal = Decimal("250")
    end_of_year_award: Decimal = Decimal("5000")
    tick_interval_seconds: float = 3600
    api_cooldown_seconds: float = 86400
    fmp_api_key: Optional[str] = None
    store_path: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        for name in ("starting_balance", "monthly_award", "end_of_year_award"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.tick_interval_seconds <= 0:
            raise ValueError(f"tick_interval_seconds must be positive, got {self.tick_interval_seconds}")
        if self.api_cooldown_seconds < 0:
            raise ValueError(f"api_cooldown_seconds must be non-negative, got {self.api_cooldown_seconds}")


_DECIMAL_FIELDS = {"starting_balance", "monthly_award", "end_of_year_award"}
_FLOAT_FIELDS = {"tick_interval_seconds", "api_cooldown_seconds"}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if name in _DECIMAL_FIELDS:
            return to_decimal(value)
        if name in _FLOAT_FIELDS:
            return float(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {value!r}") from e
    return str(value)


def settings_from_mapping(data: Mapping[str, Any], base: Optional[GameSettings] = None) -> GameSettings:
    """Apply known keys from data over base; unknown keys are logged and ignored."""
    known = {f.name for f in fields(GameSettings)}
    changes: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.warning("[CONFIG] :: Ignoring unknown setting %r", key)
            continue
        changes[key] = _coerce(key, value)
    return replace(base or GameSettings(), **changes)


def load_settings(path: Optional[str] = "gameledger.yaml", environ: Optional[Mapping[str, str]] = None) -> GameSettings:
    """
    Load settings from a YAML file and the environment.

    Args:
        path: YAML file; a missing file (or None) leaves the defaults in place
        environ: Environment mapping (default: os.environ after load_dotenv())
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    data: Dict[str, Any] = {}
    if path:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info("[CONFIG] :: %s not found, using defaults", path)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")

    settings = settings_from_mapping(data)

    overrides = {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX)
    }
    if overrides:
        settings = settings_from_mapping(overrides, base=settings)
    return settings
