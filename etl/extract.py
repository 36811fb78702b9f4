"""
etl/extract.py – Extraction layer (Rate Source).

Calls the Fixer.io `latest` endpoint for the current EUR-based FX rates.

API call we make:
  GET http://data.fixer.io/api/latest?access_key=<KEY>&base=EUR[&symbols=GBP,USD]

Example response:
  {
    "success": true,
    "timestamp": 1760688000,
    "base": "EUR",
    "date": "2026-10-17",
    "rates": {"GBP": 0.85, "USD": 1.1, ...}
  }

API-level failures (bad key, unsupported base, ...) come back as HTTP 200
with "success": false and an "error" object, so both the status code and
the success flag are checked.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

import requests

from config import API_TIMEOUT_SECONDS, BASE_CURRENCY
from etl.errors import ConfigError, DecodeError, RemoteError, TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateSnapshot:
    """One fetch's complete set of code → rate values, relative to `base`."""

    base: str
    timestamp: datetime
    date: str
    rates: dict[str, float] = field(default_factory=dict)


class FixerRateSource:
    """
    Stateless client for the Fixer.io `latest` endpoint.

    Every call issues exactly one request and is never retried here; the
    scheduler running the job owns run-level retries.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = API_TIMEOUT_SECONDS,
    ):
        if not base_url:
            raise ConfigError("'base_url' must not be empty")
        if not api_key:
            raise ConfigError("'api_key' must not be empty")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session
        self.timeout = timeout

    def fetch_all(self, timeout: Optional[float] = None) -> RateSnapshot:
        """Fetch every available rate against BASE_CURRENCY."""
        return self._fetch_latest({}, timeout)

    def fetch_subset(self, codes: Iterable[str], timeout: Optional[float] = None) -> RateSnapshot:
        """
        Fetch only the given currency codes.

        An empty collection sends no `symbols` parameter, which the service
        treats as "all currencies".
        """
        symbols = ",".join(sorted({c.strip().upper() for c in codes if c.strip()}))
        params = {"symbols": symbols} if symbols else {}
        return self._fetch_latest(params, timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_latest(self, extra_params: dict[str, str], timeout: Optional[float]) -> RateSnapshot:
        url = f"{self.base_url}/latest"
        params = {"access_key": self.api_key, "base": BASE_CURRENCY, **extra_params}
        get = self.session.get if self.session is not None else requests.get

        # Never log the access key.
        logger.info("Calling Fixer.io API | %s | base=%s symbols=%s",
                    url, BASE_CURRENCY, extra_params.get("symbols", "<all>"))

        try:
            response = get(url, params=params, timeout=self.timeout if timeout is None else timeout)
        except requests.exceptions.RequestException as exc:
            logger.error("Network error reaching Fixer.io API: %s", exc)
            raise TransportError(f"error whilst fetching data from {url}: {exc}") from exc

        if not response.ok:
            logger.error("HTTP error from Fixer.io API: %s %s", response.status_code, response.reason)
            raise RemoteError(
                f"response returned non-2xx status code {response.status_code} {response.reason}",
                status=response.status_code,
                body=response.text,
            )

        snapshot = self._decode(response)

        logger.info(
            "Extraction done | %d rates fetched | base=%s | date=%s",
            len(snapshot.rates),
            snapshot.base,
            snapshot.date,
        )
        return snapshot

    @staticmethod
    def _decode(response: requests.Response) -> RateSnapshot:
        try:
            data = response.json()
        except ValueError as exc:
            raise DecodeError(f"error whilst decoding JSON body: {exc}") from exc

        if not isinstance(data, dict):
            raise DecodeError(f"expected a JSON object, got {type(data).__name__}")

        if data.get("success") is False:
            error = data.get("error") or {}
            raise RemoteError(
                f"Fixer.io reported failure {error.get('code')} ({error.get('type')})",
                status=response.status_code,
                body=response.text,
            )

        rates = data.get("rates")
        if not isinstance(rates, dict):
            raise DecodeError("response body has no 'rates' object")

        base = data.get("base", BASE_CURRENCY)
        if base != BASE_CURRENCY:
            raise DecodeError(f"response base {base!r} does not match requested base {BASE_CURRENCY!r}")

        try:
            parsed = {str(code): float(rate) for code, rate in rates.items()}
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"non-numeric rate in response: {exc}") from exc

        try:
            collected = datetime.fromtimestamp(int(data.get("timestamp", 0)), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise DecodeError(f"invalid timestamp {data.get('timestamp')!r}") from exc

        return RateSnapshot(
            base=base,
            timestamp=collected,
            date=str(data.get("date", "")),
            rates=parsed,
        )
