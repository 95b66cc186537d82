from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
import json
import time
from types import MappingProxyType
from typing import Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

from finledger.errors import RateProviderUnavailable, RateUnavailable, ValidationError

logger = structlog.get_logger(__name__)

MINOR_UNIT = Decimal("0.01")

# USD value of one unit of each currency.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("1.087"),
    "GBP": Decimal("1.266"),
    "JPY": Decimal("0.00678"),
    "CAD": Decimal("0.746"),
    "AUD": Decimal("0.658"),
    "NZD": Decimal("0.610"),
    "CHF": Decimal("1.136"),
    "SEK": Decimal("0.0957"),
    "RON": Decimal("0.2185"),
}


@dataclass(frozen=True)
class RateTable:
    """Immutable snapshot of rates relative to ``base_currency``.

    Each rate is the value of one unit of the currency expressed in the base
    currency, so converting is ``amount * rate[source] / rate[target]``.
    """

    rates: Mapping[str, Decimal]
    base_currency: str = "USD"

    def __post_init__(self) -> None:
        frozen = {normalize_currency(code): _coerce_amount(value) for code, value in self.rates.items()}
        object.__setattr__(self, "rates", MappingProxyType(frozen))

    def rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise RateUnavailable(f"Exchange rate for {normalized} not found") from exc

    def __contains__(self, currency: object) -> bool:
        return isinstance(currency, str) and currency.strip().upper() in self.rates


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates."""

    rates: Mapping[str, Decimal] = None
    base_currency: str = "USD"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self) -> RateTable:
        return RateTable(rates=self.rates, base_currency=self.base_currency)


@dataclass(frozen=True)
class CachedRates:
    table: RateTable
    expires_at: float


@dataclass
class FrankfurterRateProvider:
    base_currency: str = "USD"
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: float = 8
    _cache: dict[str, CachedRates] = field(default_factory=dict)

    def get_rates(self) -> RateTable:
        base_currency = normalize_currency(self.base_currency)
        cached = self._cache.get(base_currency)
        now = time.monotonic()
        if cached and cached.expires_at > now:
            return cached.table

        table = self._fetch_rates(base_currency)
        self._cache[base_currency] = CachedRates(table=table, expires_at=now + self.cache_ttl_seconds)
        return table

    def _fetch_rates(self, base_currency: str) -> RateTable:
        url = f"{self.base_url}/latest?from={base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        quoted = payload.get("rates")
        if not isinstance(quoted, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        # Frankfurter quotes units per base; the table stores base per unit.
        parsed: dict[str, Decimal] = {}
        for code, value in quoted.items():
            units_per_base = Decimal(str(value))
            if units_per_base > 0:
                parsed[normalize_currency(code)] = Decimal("1") / units_per_base
        parsed[base_currency] = Decimal("1")
        logger.info("exchange_rates_fetched", base_currency=base_currency, currencies=len(parsed))
        return RateTable(rates=parsed, base_currency=base_currency)


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: StaticRateProvider | FrankfurterRateProvider
    fallback: StaticRateProvider

    def get_rates(self) -> RateTable:
        try:
            return self.primary.get_rates()
        except RateProviderUnavailable as exc:
            logger.warning("exchange_rates_fallback", error=str(exc))
            return self.fallback.get_rates()


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: RateTable,
) -> Decimal:
    """Convert an amount between currencies using one rate snapshot.

    No rounding happens here; callers round with :func:`round_money` only
    when the value is persisted.
    """
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    source_rate = rates.rate(normalized_source)
    target_rate = rates.rate(normalized_target)
    return coerced_amount * source_rate / target_rate


def round_money(amount: Decimal) -> Decimal:
    return _coerce_amount(amount).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
