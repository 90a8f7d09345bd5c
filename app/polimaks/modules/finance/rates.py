"""
Exchange rates (units of each currency per 1 USD).

Live rates come from a public JSON endpoint and are cached in memory; any
failure is logged and the defaults are used.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import CURRENCIES

from .models import RateOverride

if TYPE_CHECKING:
    from app.polimaks.models import User

logger = logging.getLogger(__name__)

DEFAULT_RATES: dict[str, float] = {"USD": 1, "EUR": 0.92, "RUB": 90, "UZS": 12500}

CACHE_TTL_SECONDS = 6 * 60 * 60


class RatesError(RuntimeError):
    pass


@dataclass(frozen=True)
class RatesClient:
    api_url: str
    timeout_seconds: int = 10

    def fetch(self) -> dict[str, float]:
        req = urllib.request.Request(self.api_url, method="GET")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            raise RatesError(f"HTTP {e.code} from rates API") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise RatesError(f"Rates API unreachable: {e}") from e
        try:
            data: dict[str, Any] = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise RatesError("Invalid JSON from rates API") from e
        return parse_rates(data)


def parse_rates(data: dict[str, Any]) -> dict[str, float]:
    """Pick the supported currencies out of an `{"rates": {...}}` payload."""
    rates = data.get("rates") if isinstance(data, dict) else None
    if not isinstance(rates, dict):
        return {}
    out = {}
    for cur in CURRENCIES:
        try:
            value = float(rates.get(cur) or 0)
        except (TypeError, ValueError):
            continue
        if value > 0:
            out[cur] = value
    return out


_cache: dict[str, Any] = {"rates": None, "fetched_at": 0.0}
_cache_lock = threading.Lock()


def clear_cache() -> None:
    with _cache_lock:
        _cache["rates"] = None
        _cache["fetched_at"] = 0.0


def current_rates(config: dict | None = None, *, client: RatesClient | None = None) -> dict[str, float]:
    """Defaults overlaid with the (cached) live rates."""
    config = config or {}
    rates = dict(DEFAULT_RATES)
    if not config.get("RATES_FETCH_ENABLED") and client is None:
        return rates

    with _cache_lock:
        cached = _cache["rates"]
        fresh = cached is not None and (time.time() - _cache["fetched_at"]) < CACHE_TTL_SECONDS
    if not fresh:
        client = client or RatesClient(api_url=config.get("RATES_API_URL") or "https://open.er-api.com/v6/latest/USD")
        try:
            fetched = client.fetch()
        except RatesError as e:
            logger.warning("Exchange rate fetch failed, using defaults: %s", e)
            fetched = {}
        with _cache_lock:
            # Failed fetches are cached too so an offline API is not hit per request.
            _cache["rates"] = fetched
            _cache["fetched_at"] = time.time()
        cached = fetched
    rates.update(cached or {})
    return rates


def overrides_for(s: Session, on_date: date) -> dict[str, float]:
    rows = s.query(RateOverride).filter(RateOverride.date == on_date).all()
    return {r.currency: r.rate for r in rows}


def rate_for_date(s: Session, currency: str, on_date: date, rates: dict[str, float] | None = None) -> float:
    """Manual override for the day, else 1 for UZS, else the live/default rate."""
    override = overrides_for(s, on_date).get(currency)
    if override is not None:
        return override
    if currency == "UZS":
        return 1.0
    rates = rates or DEFAULT_RATES
    return float(rates.get(currency) or DEFAULT_RATES.get(currency) or 1)


def set_rate_override(s: Session, on_date: date, currency: str, value: float | None, user: User) -> RateOverride | None:
    """Store a manual rate for (date, currency); `None` clears it."""
    if currency not in CURRENCIES:
        raise ValueError(f"Currency must be one of: {', '.join(CURRENCIES)}.")
    if value is not None and value <= 0:
        raise ValueError("Rate must be a positive number.")
    row = s.query(RateOverride).filter(RateOverride.date == on_date, RateOverride.currency == currency).one_or_none()
    old = row.rate if row else None
    if value is None:
        if row is not None:
            s.delete(row)
        result = None
    else:
        if row is None:
            row = RateOverride(date=on_date, currency=currency, rate=value)
            s.add(row)
        row.rate = value
        row.updated_at = datetime.utcnow()
        result = row
    s.flush()
    record_event(
        s,
        actor=user,
        action="finance.rate.set" if value is not None else "finance.rate.clear",
        entity_type="RateOverride",
        entity_id=f"{on_date.isoformat()}:{currency}",
        metadata={"old": old, "new": value},
    )
    return result


def override_dates(s: Session) -> list[dict]:
    """Days that carry manual rates, newest first."""
    by_date: dict[date, dict[str, float]] = {}
    for r in s.query(RateOverride).all():
        by_date.setdefault(r.date, {})[r.currency] = r.rate
    return [{"date": d, "rates": by_date[d]} for d in sorted(by_date, reverse=True)]
