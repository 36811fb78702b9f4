"""
config.py – Central configuration for the currency rates sync job.
Tuneable constants live here; credentials and deployment-specific values
come from the environment (optionally via a local .env file).
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from etl.errors import ConfigError

# ---------------------------------------------------------------------------
# Currencies
# Every stored rate is expressed against this single base. The Rate Source
# always requests it, and snapshots reporting another base are rejected.
# ---------------------------------------------------------------------------
BASE_CURRENCY: str = "EUR"

# Precision policy applied on both the write and the read path.
RATE_DECIMAL_PLACES: int = 5

# ---------------------------------------------------------------------------
# FX Data Source – Fixer.io (https://fixer.io/)
# The free plan only supports EUR as base and plain HTTP.
# ---------------------------------------------------------------------------
API_BASE_URL: str = "http://data.fixer.io/api"
API_TIMEOUT_SECONDS: int = 30

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
TABLE_NAME: str = "currency_rates"
DEFAULT_TURSO_DB_NAME: str = "currency-rates"

# Background sync period of the embedded replica, on top of the forced sync
# done once per run.
SYNC_INTERVAL_SECONDS: int = 60

# Local DuckDB file used when no Turso primary is configured.
DB_PATH: str = os.path.join(os.path.dirname(__file__), "currency_rates.duckdb")


@dataclass(frozen=True)
class Settings:
    fixerio_key: str
    fixerio_base_url: str = API_BASE_URL
    turso_url: Optional[str] = None
    turso_auth_token: Optional[str] = None
    turso_db_name: str = DEFAULT_TURSO_DB_NAME
    local_db_path: str = DB_PATH
    sync_timeout: Optional[float] = None

    @property
    def uses_replica(self) -> bool:
        return self.turso_url is not None


def _env(
    environ: Mapping[str, str],
    name: str,
    required: bool = False,
    default: Optional[str] = None,
) -> Optional[str]:
    """Resolve one variable; empty strings count as unset."""
    value = environ.get(name)
    if value:
        return value
    if required:
        raise ConfigError(f"environment variable not found: {name}", variable=name)
    return default


def _positive_float(name: str, raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}", variable=name) from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}", variable=name)
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build the Settings object once at startup.

    Parameters
    ----------
    environ : Mapping[str, str], optional
        Defaults to os.environ. Tests pass a plain dict.

    Raises
    ------
    ConfigError
        When a required variable is missing or a value cannot be parsed.
    """
    if environ is None:
        environ = os.environ

    turso_url = _env(environ, "TURSO_URL")

    return Settings(
        fixerio_key=_env(environ, "FIXERIO_KEY", required=True),
        fixerio_base_url=_env(environ, "FIXERIO_BASE_URL", default=API_BASE_URL),
        turso_url=turso_url,
        # The auth token only matters once a remote primary is configured.
        turso_auth_token=_env(environ, "TURSO_AUTH_TOKEN", required=turso_url is not None),
        turso_db_name=_env(environ, "TURSO_DB_NAME", default=DEFAULT_TURSO_DB_NAME),
        local_db_path=_env(environ, "FX_DB_PATH", default=DB_PATH),
        sync_timeout=_positive_float(
            "FX_SYNC_TIMEOUT_SECONDS", _env(environ, "FX_SYNC_TIMEOUT_SECONDS")
        ),
    )
