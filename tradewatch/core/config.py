# tradewatch/core/config.py
from __future__ import annotations

import json
import logging
from datetime import timedelta, timezone
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("tradewatch.config")

LEDGER_POLICIES = {"dual_source", "broker_only"}

DEFAULT_AUTH_ERROR_SIGNATURES = [
    "could not authenticate",
    "token expired",
    "invalid token",
    "unauthorized",
    "access denied",
    "code: -16",
]


def _parse_list(v: Any, upper: bool = False) -> List[str]:
    """
    Accepts:
      - list: ["a","b"]
      - csv:  "a,b"
      - json: '["a","b"]'
    Returns trimmed, non-empty strings.
    """
    if v is None:
        return []
    norm = (lambda x: str(x).strip().upper()) if upper else (lambda x: str(x).strip())
    if isinstance(v, list):
        return [norm(x) for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [norm(x) for x in arr if str(x).strip()]
        except Exception:
            # fall back to csv parse
            pass
    return [norm(p) for p in s.split(",") if p.strip()]


def _parse_kv_int(v: Any) -> Dict[str, int]:
    """
    Accepts:
      - dict: {"NIFTY": 75}
      - csv:  "NIFTY:75,BANKNIFTY:35"
      - json: '{"NIFTY":75}'
    """
    if v is None:
        return {}
    if isinstance(v, dict):
        out: Dict[str, int] = {}
        for k, val in v.items():
            ks = str(k).strip().upper()
            if not ks:
                continue
            try:
                out[ks] = int(val)
            except Exception:
                continue
        return out

    s = str(v).strip()
    if not s:
        return {}

    if s.startswith("{"):
        try:
            raw = json.loads(s)
            if isinstance(raw, dict):
                return _parse_kv_int(raw)
        except Exception:
            pass

    out: Dict[str, int] = {}
    for part in s.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        k, val = part.split(":", 1)
        k = k.strip().upper()
        if not k:
            continue
        try:
            out[k] = int(val.strip())
        except Exception:
            continue
    return out


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding List/Dict fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Storage / logging ---
    DB_PATH: str = "data/tradewatch.db"
    LOG_LEVEL: str = "INFO"

    # --- Ledger ---
    LEDGER_POLICY: str = "dual_source"  # dual_source/broker_only
    LEDGER_RECENT_DAYS: int = 30

    # --- Credential health ---
    CREDENTIAL_CACHE_TTL_SECONDS: int = 300
    CREDENTIAL_CHECK_INTERVAL_MINUTES: int = 30
    CREDENTIAL_CHECK_TIMEOUT_SECONDS: float = 10.0
    AUTH_ERROR_SIGNATURES: List[str] = Field(
        default_factory=lambda: list(DEFAULT_AUTH_ERROR_SIGNATURES)
    )

    # --- Broker ---
    FYERS_APP_ID: str = ""
    FYERS_API_BASE_URL: str = "https://api-t1.fyers.in/api/v3"
    BROKER_HTTP_TIMEOUT_SECONDS: float = 8.0

    # --- Instruments ---
    LOT_SIZE_MAP: Dict[str, int] = Field(
        default_factory=lambda: {"NIFTY": 75, "BANKNIFTY": 35, "SENSEX": 20}
    )
    DEFAULT_LOT_SIZE: int = 75
    DEFAULT_TRAILING_X: float = 20.0
    DEFAULT_TRAILING_Y: float = 15.0
    MARKET_CLOSE_TIME: str = "15:15"  # HH:MM local exchange time
    MARKET_UTC_OFFSET_MINUTES: int = 330  # NSE/BSE run on IST, no DST

    # --- Notifications ---
    NOTIFY_WORKERS: int = 2

    @field_validator("AUTH_ERROR_SIGNATURES", mode="before")
    @classmethod
    def parse_signatures(cls, v: Any) -> List[str]:
        return [s.lower() for s in _parse_list(v)]

    @field_validator("LOT_SIZE_MAP", mode="before")
    @classmethod
    def parse_lot_size_map(cls, v: Any) -> Dict[str, int]:
        return _parse_kv_int(v)

    def model_post_init(self, __context: Any) -> None:
        self.LEDGER_POLICY = (self.LEDGER_POLICY or "dual_source").lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()
        self.FYERS_API_BASE_URL = self.FYERS_API_BASE_URL.strip().rstrip("/")

    def market_close(self) -> tuple[int, int]:
        hh, mm = self.MARKET_CLOSE_TIME.strip().split(":", 1)
        return int(hh), int(mm)

    def market_tz(self) -> timezone:
        return timezone(timedelta(minutes=self.MARKET_UTC_OFFSET_MINUTES))

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.LEDGER_POLICY not in LEDGER_POLICIES:
            errors.append(
                f"LEDGER_POLICY must be one of {sorted(LEDGER_POLICIES)}."
            )

        if self.CREDENTIAL_CACHE_TTL_SECONDS <= 0:
            errors.append("CREDENTIAL_CACHE_TTL_SECONDS must be > 0.")
        if self.CREDENTIAL_CHECK_INTERVAL_MINUTES <= 0:
            errors.append("CREDENTIAL_CHECK_INTERVAL_MINUTES must be > 0.")
        if self.CREDENTIAL_CHECK_TIMEOUT_SECONDS <= 0:
            errors.append("CREDENTIAL_CHECK_TIMEOUT_SECONDS must be > 0.")

        if self.LEDGER_RECENT_DAYS <= 0:
            errors.append("LEDGER_RECENT_DAYS must be > 0.")

        if self.DEFAULT_LOT_SIZE <= 0:
            errors.append("DEFAULT_LOT_SIZE must be > 0.")
        bad_lots = sorted(k for k, v in self.LOT_SIZE_MAP.items() if v <= 0)
        if bad_lots:
            errors.append(f"LOT_SIZE_MAP has non-positive lot sizes: {bad_lots}")

        if self.DEFAULT_TRAILING_X <= 0 or self.DEFAULT_TRAILING_Y <= 0:
            errors.append("DEFAULT_TRAILING_X and DEFAULT_TRAILING_Y must be > 0.")

        try:
            hh, mm = self.market_close()
            if not (0 <= hh < 24 and 0 <= mm < 60):
                errors.append("MARKET_CLOSE_TIME must be a valid HH:MM time.")
        except ValueError:
            errors.append("MARKET_CLOSE_TIME must look like HH:MM.")

        if not (-720 <= self.MARKET_UTC_OFFSET_MINUTES <= 840):
            errors.append("MARKET_UTC_OFFSET_MINUTES must be within -720..840.")

        if self.NOTIFY_WORKERS < 1:
            errors.append("NOTIFY_WORKERS must be >= 1.")

        if not self.AUTH_ERROR_SIGNATURES:
            warnings.append(
                "AUTH_ERROR_SIGNATURES is empty. Expired sessions will never be "
                "marked disconnected."
            )

        if not self.FYERS_APP_ID:
            warnings.append("FYERS_APP_ID is empty. Session checks will be rejected.")

        if self.LEDGER_POLICY == "broker_only":
            warnings.append(
                "LEDGER_POLICY=broker_only drops APP events except manual exits."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
