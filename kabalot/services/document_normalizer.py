"""
Turn raw annotator entities into canonical, ledger-currency expense records.

The annotator returns a flat list of typed entities. Normalization happens in
two passes: the first detects whether any monetary value is in the foreign
currency and picks up the first ``Date`` entity; the second maps known entity
types onto ``ExpenseRecord`` fields, converting amounts when needed.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from kabalot.schemas import ExpenseRecord

logger = logging.getLogger(__name__)

FOREIGN_MARKER = re.compile(r"\$|USD")
LOCAL_MARKER = re.compile(r'₪|ILS|ש"ח')
_AMOUNT_STRIP = re.compile(r"[^0-9.\-]+")

# Order matters: ambiguous inputs such as 10/04/2024 resolve to the first
# pattern that parses, so month-first wins over day-first.
DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%Y.%m.%d",
    "%B %d, %Y",
    "%b %d, %Y",
)

BUSINESS_NAME = "Business-Name"
BUSINESS_NUMBER = "Business-Number"
INVOICE_NUMBER = "Invoice-Number"
PRICE_WITHOUT_VAT = "Price-Without-Vat"
VAT = "VAT"
TOTAL_PRICE = "Total-Price"
DATE = "Date"

_TEXT_FIELDS = {
    BUSINESS_NAME: "business_name",
    BUSINESS_NUMBER: "business_number",
    INVOICE_NUMBER: "invoice_number",
}
_AMOUNT_FIELDS = {
    PRICE_WITHOUT_VAT: "price_without_vat",
    VAT: "vat",
    TOTAL_PRICE: "total_price",
}


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def detect_currency(text: str, *, foreign: str = "USD", local: str = "ILS") -> str:
    """Classify free text as foreign or local currency; unmarked text is local."""
    if FOREIGN_MARKER.search(text):
        return foreign
    if LOCAL_MARKER.search(text):
        return local
    return local


def clean_amount(value: Any) -> float:
    """Parse an amount, keeping only digits, dots and minus signs."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _AMOUNT_STRIP.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_invoice_date(raw: Optional[str], *, today: Optional[date] = None) -> str:
    """Resolve a date literal through the ordered format chain.

    Falls back to ``today`` when the literal is missing or matches no format.
    """
    fallback = format_date(today or date.today())
    if not raw:
        return fallback
    candidate = raw.strip()
    for pattern in DATE_FORMATS:
        try:
            parsed = datetime.strptime(candidate, pattern)
        except ValueError:
            continue
        return format_date(parsed.date())
    logger.info("Unrecognized invoice date %r, using processing date", raw)
    return fallback


def _money_value(entity: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    normalized = entity.get("normalizedValue") or {}
    money = normalized.get("moneyValue")
    return money if isinstance(money, dict) else None


def _money_amount(money: Dict[str, Any]) -> Any:
    if "amount" in money:
        return money["amount"]
    units = clean_amount(money.get("units", 0))
    nanos = clean_amount(money.get("nanos", 0))
    return units + nanos / 1_000_000_000


def entity_value(entity: Dict[str, Any]) -> Any:
    """Structured money amount when present, otherwise the mention text."""
    money = _money_value(entity)
    if money is not None:
        return _money_amount(money)
    return entity.get("mentionText") or ""


class ExchangeRateProvider(Protocol):
    async def get_rate(self, on: str) -> float:
        ...


class ExchangeRateCache:
    """Process-lifetime memo of foreign-to-ledger rates keyed by invoice date."""

    def __init__(self, provider: ExchangeRateProvider, capacity: int = 366) -> None:
        self._provider = provider
        self._capacity = max(1, capacity)
        self._rates: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._rates)

    async def get(self, on: str) -> float:
        rate = self._rates.get(on)
        if rate is not None:
            self._rates.move_to_end(on)
            return rate
        rate = await self._provider.get_rate(on)
        self._rates[on] = rate
        while len(self._rates) > self._capacity:
            self._rates.popitem(last=False)
        return rate


class DocumentNormalizer:
    """Build ``ExpenseRecord`` objects from annotator entities."""

    def __init__(
        self,
        rates: ExchangeRateCache,
        *,
        foreign_currency: str = "USD",
        ledger_currency: str = "ILS",
        today: Callable[[], date] = date.today,
    ) -> None:
        self._rates = rates
        self._foreign = foreign_currency
        self._ledger = ledger_currency
        self._today = today

    def _entity_currency(self, entity: Dict[str, Any]) -> str:
        money = _money_value(entity)
        if money is not None and money.get("currencyCode"):
            return str(money["currencyCode"]).upper()
        return detect_currency(
            str(entity.get("mentionText") or ""),
            foreign=self._foreign,
            local=self._ledger,
        )

    def _scan(self, entities: Iterable[Dict[str, Any]]) -> tuple[bool, Optional[str]]:
        has_foreign = False
        raw_date: Optional[str] = None
        for entity in entities:
            if self._entity_currency(entity) == self._foreign:
                has_foreign = True
            if entity.get("type") == DATE and raw_date is None:
                raw_date = str(entity_value(entity))
            if has_foreign and raw_date is not None:
                break
        return has_foreign, raw_date

    async def normalize(
        self, file_name: str, entities: Iterable[Dict[str, Any]]
    ) -> ExpenseRecord:
        entities = list(entities)
        has_foreign, raw_date = self._scan(entities)
        invoice_date = parse_invoice_date(raw_date, today=self._today())

        rate = 1.0
        if has_foreign:
            rate = await self._rates.get(invoice_date)
            logger.info("Using exchange rate %s for %s (%s)", rate, invoice_date, file_name)

        fields: Dict[str, Any] = {"file_name": file_name, "date": invoice_date}
        foreign_total: Optional[float] = None
        foreign_pre_tax = 0.0
        for entity in entities:
            entity_type = entity.get("type")
            value = entity_value(entity)
            if entity_type in _TEXT_FIELDS:
                fields[_TEXT_FIELDS[entity_type]] = str(value)
            elif entity_type in _AMOUNT_FIELDS:
                amount = clean_amount(value)
                if entity_type == TOTAL_PRICE:
                    foreign_total = amount
                elif entity_type == PRICE_WITHOUT_VAT:
                    foreign_pre_tax += amount
                fields[_AMOUNT_FIELDS[entity_type]] = amount * rate

        original_total = None
        if has_foreign:
            original_total = foreign_total if foreign_total is not None else foreign_pre_tax

        return ExpenseRecord(
            **fields,
            original_total_foreign=original_total,
            currency=self._ledger,
            source_currency=self._foreign if has_foreign else self._ledger,
        )


__all__ = [
    "DATE_FORMATS",
    "DocumentNormalizer",
    "ExchangeRateCache",
    "ExchangeRateProvider",
    "clean_amount",
    "detect_currency",
    "entity_value",
    "parse_invoice_date",
]
