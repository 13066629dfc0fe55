"""Quote pricing and numbering for Flux.

A quote is a snapshot. Customer name and product SKU/name are copied onto
the quote when its line items are priced and never follow later edits to
the customer or product.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ValidationError
from .flux_logging import log_performance
from .models import QUOTE_STATUSES, Quote, QuoteFilters, QuoteLineItem, format_timestamp, parse_timestamp
from .store import FluxStore, synchronized

logger = logging.getLogger("flux.quotes")

CENT = Decimal("0.01")
QUOTE_NUMBER_PATTERN = re.compile(r"^Q-\d{4}-(\d+)$")
SEQUENCE_COUNTER = "quote_sequence"

UPDATABLE_QUOTE_FIELDS = frozenset(
    {"line_items", "tax_rate", "customer_id", "valid_days", "notes", "terms", "status"}
)


def round_money(value: Any) -> Decimal:
    """Round half-up to whole cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(quantity: Any, unit_price: Any, discount: Any = 0) -> Decimal:
    gross = Decimal(str(quantity)) * Decimal(str(unit_price))
    return round_money(gross * (Decimal(1) - Decimal(str(discount)) / Decimal(100)))


def compute_totals(line_totals: Sequence[Decimal], tax_rate: Any) -> Dict[str, Decimal]:
    subtotal = round_money(sum(line_totals, Decimal(0)))
    tax_amount = round_money(subtotal * Decimal(str(tax_rate)) / Decimal(100))
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "total": round_money(subtotal + tax_amount),
    }


def quote_sequence(quote_number: str) -> int:
    match = QUOTE_NUMBER_PATTERN.match(quote_number or "")
    return int(match.group(1)) if match else 0


def _number(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"'{field_name}' must be a number")
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"'{field_name}' must be a number") from None
    if not number.is_finite():
        raise ValidationError(f"'{field_name}' must be a number")
    return number


def _check_tax_rate(value: Any) -> float:
    rate = _number(value, "tax_rate")
    if rate < 0 or rate > 100:
        raise ValidationError("'tax_rate' must be between 0 and 100")
    return float(rate)


def _check_valid_days(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("'valid_days' must be a non-negative whole number")
    return value


class QuoteEngine:
    """Creates, prices and updates quotes held by a :class:`FluxStore`."""

    def __init__(self, store: FluxStore, *, default_tax_rate: float = 10.0, default_valid_days: int = 30):
        self.store = store
        self.default_tax_rate = default_tax_rate
        self.default_valid_days = default_valid_days

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_quotes(self, filters: Optional[QuoteFilters] = None) -> List[Quote]:
        """Matching quotes, newest first."""
        filters = filters or QuoteFilters()
        quotes = [q for q in self.store.data.quotes if filters.matches(q)]
        quotes.sort(key=lambda q: (parse_timestamp(q.created_at), quote_sequence(q.quote_number)), reverse=True)
        return quotes

    def get_quote(self, quote_id: str) -> Optional[Quote]:
        return next((q for q in self.store.data.quotes if q.id == quote_id), None)

    def quotes_by_customer(self, customer_id: str) -> List[Quote]:
        return self.list_quotes(QuoteFilters(customer_id=customer_id))

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def price_line_items(self, items: Sequence[Mapping[str, Any]]) -> List[QuoteLineItem]:
        """Resolve products and compute line totals. Raises ValidationError on bad input."""
        if not items:
            raise ValidationError("A quote needs at least one line item")
        priced = []
        for index, item in enumerate(items, start=1):
            if not isinstance(item, Mapping):
                raise ValidationError(f"Line item {index} must be an object")
            product_id = item.get("product_id")
            product = self.store.get_product(product_id) if product_id else None
            if product is None:
                raise ValidationError(f"Line item {index}: product '{product_id}' not found")

            quantity = _number(item.get("quantity"), "quantity")
            if quantity <= 0:
                raise ValidationError(f"Line item {index}: quantity must be greater than 0")
            unit_price = item.get("unit_price")
            unit_price = _number(product.sell_price if unit_price is None else unit_price, "unit_price")
            if unit_price < 0:
                raise ValidationError(f"Line item {index}: unit price must not be negative")
            discount = _number(item.get("discount") or 0, "discount")
            if discount < 0 or discount > 100:
                raise ValidationError(f"Line item {index}: discount must be between 0 and 100")
            # The stored unit price is in whole cents and the line total is derived from it.
            unit_price = round_money(unit_price)

            priced.append(
                QuoteLineItem(
                    id=self.store.new_id(),
                    product_id=product.id,
                    product_sku=product.sku,
                    product_name=product.name,
                    quantity=int(quantity) if quantity == quantity.to_integral_value() else float(quantity),
                    unit_price=float(unit_price),
                    discount=float(discount),
                    line_total=float(line_total(quantity, unit_price, discount)),
                )
            )
        return priced

    def _apply_totals(self, quote: Quote) -> None:
        totals = compute_totals([round_money(item.line_total) for item in quote.line_items], quote.tax_rate)
        quote.subtotal = float(totals["subtotal"])
        quote.tax_amount = float(totals["tax_amount"])
        quote.total = float(totals["total"])

    def _next_quote_number(self) -> str:
        counters = self.store.data.counters
        highest = max((quote_sequence(q.quote_number) for q in self.store.data.quotes), default=0)
        sequence = max(counters.get(SEQUENCE_COUNTER, 0), highest) + 1
        counters[SEQUENCE_COUNTER] = sequence
        return f"Q-{self.store.clock().year}-{sequence:04d}"

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @log_performance("create_quote")
    @synchronized
    def create_quote(
        self,
        customer_id: str,
        line_items: Sequence[Mapping[str, Any]],
        *,
        tax_rate: Optional[float] = None,
        valid_days: Optional[int] = None,
        notes: Optional[str] = None,
        terms: Optional[str] = None,
        status: str = "draft",
    ) -> Quote:
        customer = self.store.get_customer(customer_id) if customer_id else None
        if customer is None:
            raise ValidationError(f"Customer '{customer_id}' not found")
        if status not in QUOTE_STATUSES:
            raise ValidationError(f"Invalid quote status '{status}'")
        rate = _check_tax_rate(self.default_tax_rate if tax_rate is None else tax_rate)
        days = _check_valid_days(self.default_valid_days if valid_days is None else valid_days)
        items = self.price_line_items(line_items)

        with self.store.transaction("create_quote", "quotes"):
            issued = self.store.clock()
            now = format_timestamp(issued)
            quote = Quote(
                id=self.store.new_id(),
                quote_number=self._next_quote_number(),
                customer_id=customer.id,
                customer_name=customer.name,
                line_items=items,
                subtotal=0.0,
                tax_rate=rate,
                tax_amount=0.0,
                total=0.0,
                status=status,
                issue_date=now,
                valid_until=format_timestamp(issued + timedelta(days=days)),
                notes=notes,
                terms=terms,
                created_at=now,
                updated_at=now,
            )
            self._apply_totals(quote)
            self.store.data.quotes.append(quote)
            self.store.mark_changed()
        logger.info(f"Created quote {quote.quote_number} for {customer.name}: total {quote.total:.2f}")
        return quote

    @synchronized
    def update_quote(self, quote_id: str, updates: Mapping[str, Any]) -> Optional[Quote]:
        """Partial update. New line items or tax rate reprice the quote."""
        quote = self.get_quote(quote_id)
        if quote is None:
            return None
        unknown = sorted(set(updates) - UPDATABLE_QUOTE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update quote field(s): {', '.join(unknown)}")

        customer = None
        if "customer_id" in updates:
            customer = self.store.get_customer(updates["customer_id"]) if updates["customer_id"] else None
            if customer is None:
                raise ValidationError(f"Customer '{updates['customer_id']}' not found")
        if "status" in updates and updates["status"] not in QUOTE_STATUSES:
            raise ValidationError(f"Invalid quote status '{updates['status']}'")
        items = self.price_line_items(updates["line_items"]) if "line_items" in updates else None
        rate = _check_tax_rate(updates["tax_rate"]) if "tax_rate" in updates else None
        days = _check_valid_days(updates["valid_days"]) if "valid_days" in updates else None

        with self.store.transaction("update_quote", "quotes"):
            if customer is not None:
                quote.customer_id = customer.id
                quote.customer_name = customer.name
            if items is not None:
                quote.line_items = items
            if rate is not None:
                quote.tax_rate = rate
            if items is not None or rate is not None:
                self._apply_totals(quote)
            if days is not None:
                quote.valid_until = format_timestamp(parse_timestamp(quote.issue_date) + timedelta(days=days))
            for key in ("notes", "terms", "status"):
                if key in updates:
                    setattr(quote, key, updates[key])
            quote.updated_at = self.store.now()
            self.store.mark_changed()
        return quote

    @synchronized
    def update_quote_status(self, quote_id: str, status: str) -> Optional[Quote]:
        """Change only the status; totals are untouched."""
        quote = self.get_quote(quote_id)
        if quote is None:
            return None
        if status not in QUOTE_STATUSES:
            raise ValidationError(f"Invalid quote status '{status}'")
        with self.store.transaction("update_quote_status", "quotes"):
            quote.status = status
            quote.updated_at = self.store.now()
            self.store.mark_changed()
        return quote

    @synchronized
    def delete_quote(self, quote_id: str) -> bool:
        if self.get_quote(quote_id) is None:
            return False
        with self.store.transaction("delete_quote", "quotes"):
            self.store.data.quotes = [q for q in self.store.data.quotes if q.id != quote_id]
            self.store.mark_changed()
        return True
