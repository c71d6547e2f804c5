"""
Process settings: environment driven.

Supports:
- MDBEXPORTER_* environment variables and a .env file
- Values set here override the config file; command line flags override
  both (see cli.py)
- Durations as seconds or strings with ms/s/m/h units (parse_duration)
"""
import re
from typing import Any, Optional, Union

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MONGODB_URI = "mongodb://localhost:27017"
DEFAULT_SERVER_NAME = "main"
DEFAULT_BIND = ":9412"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_QUERY_TIMEOUT = 10.0
DEFAULT_LOG_LEVEL = "warn"
DEFAULT_LOG_ENCODING = "json"
HEALTHZ_PATH = "/healthz"

LOG_ENCODINGS = ("json", "console")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[int, float, str, None]) -> Optional[float]:
    """Seconds from a number or a duration string like "1m30s" / "-1s"."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")

    text = value.strip()
    sign = -1.0 if text.startswith("-") else 1.0
    text = text.lstrip("+-")
    try:
        return sign * float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or not text:
        raise ValueError(f"invalid duration {value!r}")
    return sign * total


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MDBEXPORTER_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Config file path; unset → default lookup locations
    config_file: Optional[str] = Field(
        None, validation_alias="MDBEXPORTER_CONFIG"
    )

    # ═══════════════════════════════════════════════════════════════════════
    # MongoDB (server 0)
    # ═══════════════════════════════════════════════════════════════════════
    mongodb_uri: Optional[str] = None
    mongodb_query_timeout: Optional[float] = None

    # ═══════════════════════════════════════════════════════════════════════
    # Logging
    # ═══════════════════════════════════════════════════════════════════════
    log_level: str = DEFAULT_LOG_LEVEL  # debug | info | warn | error
    log_encoding: str = DEFAULT_LOG_ENCODING  # json | console

    # ═══════════════════════════════════════════════════════════════════════
    # HTTP
    # ═══════════════════════════════════════════════════════════════════════
    bind: str = DEFAULT_BIND
    metrics_path: str = Field(
        DEFAULT_METRICS_PATH,
        validation_alias=AliasChoices("MDBEXPORTER_METRICSPATH", "MDBEXPORTER_METRICS_PATH"),
    )

    @field_validator("log_encoding")
    @classmethod
    def _validate_log_encoding(cls, v: str) -> str:
        if v not in LOG_ENCODINGS:
            raise ValueError(f"log_encoding must be one of {LOG_ENCODINGS}, got {v!r}")
        return v

    @field_validator("mongodb_query_timeout", mode="before")
    @classmethod
    def _parse_query_timeout(cls, v: Any) -> Optional[float]:
        return parse_duration(v)

    @field_validator("mongodb_query_timeout")
    @classmethod
    def _validate_query_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError(f"mongodb_query_timeout must be > 0, got {v}")
        return v

    # ═══════════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════════
    def explicit(self) -> dict:
        """Only the values that were actually provided (env, .env, kwargs)."""
        return {name: getattr(self, name) for name in self.model_fields_set}
