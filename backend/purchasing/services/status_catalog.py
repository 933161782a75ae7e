"""Status catalog access for one process category."""
from __future__ import annotations

from typing import Dict, Optional

from purchasing import rules
from purchasing.exceptions import ConfigurationError
from purchasing.models import StatusCatalogEntry


def render_status_label(value: str, level: Optional[int] = None) -> str:
    if level is None:
        return value
    return str(value or "").replace(rules.LEVEL_PLACEHOLDER, str(level))


class StatusCatalog:
    """Resolved status entries of one company and category.

    Loading fails with ConfigurationError when any status the process needs is
    missing, which blocks every transition of that process until the catalog
    is fixed.
    """

    def __init__(self, category_id: str, entries: Dict[str, StatusCatalogEntry]):
        self.category_id = category_id
        self._entries = entries
        self._symbols = {entry.pk: symbol for symbol, entry in entries.items()}

    @classmethod
    def load(cls, company_id: int, category_id: str) -> "StatusCatalog":
        entries = {
            entry.sub_category_id: entry
            for entry in StatusCatalogEntry.objects.filter(
                company_id=company_id,
                category_id=category_id,
                is_active=True,
            )
        }
        required = rules.REQUIRED_STATUSES.get(category_id, ())
        missing = [symbol for symbol in required if symbol not in entries]
        if missing:
            raise ConfigurationError(
                f"Status catalog for {category_id} is missing: {', '.join(missing)}.",
                code="status_catalog_incomplete",
            )
        return cls(category_id, entries)

    def status(self, symbol: str) -> StatusCatalogEntry:
        entry = self._entries.get(symbol)
        if entry is None:
            raise ConfigurationError(
                f"Status {symbol} is not configured for {self.category_id}.",
                code="status_catalog_incomplete",
            )
        return entry

    def symbol_of(self, entry: Optional[StatusCatalogEntry]) -> Optional[str]:
        if entry is None:
            return None
        return self._symbols.get(entry.pk, entry.sub_category_id)

    def label(self, symbol: str, level: Optional[int] = None) -> str:
        return render_status_label(self.status(symbol).value, level)
