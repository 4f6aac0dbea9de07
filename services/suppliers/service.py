"""Supplier matching: resolves the supplier declared on a document to a Supplier record.

Match order:
1. Exact tax id
2. Exact normalized name key
3. Fuzzy name similarity (rapidfuzz) at or above the configured threshold,
   recorded as a suggestion that needs explicit confirmation
4. No match: a new supplier is created (when auto-creation is enabled)

The store enforces one supplier per normalized key and tax id. When two
documents race to create the same supplier, the loser is redirected to the
record the winner created.
"""

import logging
import re
import unicodedata
from enum import StrEnum

from prometheus_client import Counter
from pydantic import BaseModel
from rapidfuzz import fuzz, process

from services.domain.models import Invoice, Supplier, SupplierSuggestion
from services.shared.config import Settings
from services.shared.errors import DuplicateKeyError, InvalidFieldError
from services.store.base import SupplierStore

logger = logging.getLogger(__name__)


supplier_matches_total = Counter(
    "supplier_matches_total",
    "Supplier resolutions by method",
    ["method"],
)

# Legal-form suffixes, matched after dots and commas have been removed
_LEGAL_SUFFIXES = re.compile(
    r"\s+(sa de cv|sab de cv|sapi de cv|s de rl de cv|s de rl|sc|sa|sas|sarl|"
    r"gmbh|ag|ltd|limited|inc|incorporated|llc|plc|co|corp|corporation|company|bv|nv)$"
)


def normalize_supplier_name(name: str) -> str:
    """Normalized supplier key: case fold, strip accents, punctuation and legal suffixes.

    "ACME Corp." and "acme corp" both normalize to "acme".
    """
    decomposed = unicodedata.normalize("NFKD", name)
    result = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()
    result = re.sub(r"[.,]", "", result)
    result = re.sub(r"[^\w\s]", " ", result)
    result = " ".join(result.split())
    # Strip stacked suffixes ("Foo Co Ltd"), but never the whole name
    while True:
        stripped = _LEGAL_SUFFIXES.sub("", result).strip()
        if stripped == result or not stripped:
            return result
        result = stripped


class MatchMethod(StrEnum):
    TAX_ID = "tax_id"
    NAME_KEY = "name_key"
    SUGGESTED = "suggested"
    CREATED = "created"
    UNRESOLVED = "unresolved"
    CONFIRMED = "confirmed"


class SupplierMatch(BaseModel):
    """Outcome of resolving one declared supplier."""

    method: MatchMethod
    supplier_id: str | None = None
    suggestion: SupplierSuggestion | None = None


class SupplierMatcher:
    """Resolves declared supplier identity against the supplier store."""

    def __init__(self, store: SupplierStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    async def match(self, name_raw: str | None, tax_id: str | None) -> SupplierMatch:
        """Resolve a declared supplier name and tax id.

        Args:
            name_raw: Supplier name as printed on the document
            tax_id: Supplier tax id as printed on the document

        Returns:
            SupplierMatch; supplier_id is None for suggestions and unresolved names
        """
        if tax_id:
            supplier = await self.store.find_supplier_by_tax_id(tax_id)
            if supplier is not None:
                return self._record(
                    SupplierMatch(method=MatchMethod.TAX_ID, supplier_id=supplier.id)
                )

        key = normalize_supplier_name(name_raw) if name_raw else ""
        if not key:
            return self._record(SupplierMatch(method=MatchMethod.UNRESOLVED))

        supplier = await self.store.find_supplier_by_key(key)
        if supplier is not None:
            return self._record(SupplierMatch(method=MatchMethod.NAME_KEY, supplier_id=supplier.id))

        best = await self._closest(key)
        if best is not None and best[0].normalized_name_key == key:
            # Created by a concurrent submission since the key lookup
            return self._record(SupplierMatch(method=MatchMethod.NAME_KEY, supplier_id=best[0].id))
        if best is not None:
            suggestion = SupplierSuggestion(
                supplier_id=best[0].id, legal_name=best[0].legal_name, score=best[1]
            )
            logger.info(
                f"Supplier '{name_raw}' resembles '{suggestion.legal_name}' "
                f"(score {suggestion.score:.1f}); awaiting confirmation"
            )
            return self._record(SupplierMatch(method=MatchMethod.SUGGESTED, suggestion=suggestion))

        if not self.settings.auto_create_suppliers:
            return self._record(SupplierMatch(method=MatchMethod.UNRESOLVED))

        supplier_id = await self._create(name_raw or key, key, tax_id)
        return self._record(SupplierMatch(method=MatchMethod.CREATED, supplier_id=supplier_id))

    async def _closest(self, key: str) -> tuple[Supplier, float] | None:
        """Most similar existing supplier at or above the similarity threshold."""
        suppliers = {s.id: s for s in await self.store.list_suppliers()}
        if not suppliers:
            return None
        best = process.extractOne(
            key,
            {supplier_id: s.normalized_name_key for supplier_id, s in suppliers.items()},
            scorer=fuzz.token_sort_ratio,
            score_cutoff=self.settings.supplier_similarity_threshold,
        )
        if best is None:
            return None
        _, score, supplier_id = best
        return suppliers[supplier_id], float(score)

    async def _create(self, legal_name: str, key: str, tax_id: str | None) -> str:
        try:
            supplier = await self.store.insert_supplier(
                Supplier(legal_name=legal_name, normalized_name_key=key, tax_id=tax_id)
            )
        except DuplicateKeyError as e:
            logger.info(f"Supplier '{legal_name}' created concurrently; using {e.existing_id}")
            return e.existing_id
        return supplier.id

    @staticmethod
    def _record(result: SupplierMatch) -> SupplierMatch:
        supplier_matches_total.labels(method=result.method.value).inc()
        return result

    async def resolve_invoice(self, invoice: Invoice) -> SupplierMatch:
        """Match the invoice's declared supplier and record the outcome on it."""
        result = await self.match(invoice.supplier_name_raw, invoice.supplier_tax_id)
        invoice.supplier_ref = result.supplier_id
        invoice.supplier_suggestion = result.suggestion
        return result

    async def confirm(self, invoice: Invoice, supplier_id: str) -> Supplier:
        """Resolve the invoice to an explicitly chosen supplier.

        Raises:
            SupplierNotFoundError: If the supplier does not exist
        """
        supplier = await self.store.get_supplier(supplier_id)
        invoice.supplier_ref = supplier.id
        invoice.supplier_suggestion = None
        supplier_matches_total.labels(method=MatchMethod.CONFIRMED.value).inc()
        return supplier

    async def create_for(self, invoice: Invoice, legal_name: str, tax_id: str | None) -> Supplier:
        """Create a supplier from a reviewer's entry and resolve the invoice to it.

        Any pending suggestion is discarded. A name key or tax id that already
        exists resolves to the existing supplier.

        Raises:
            InvalidFieldError: legal_name is blank
        """
        legal_name = " ".join(legal_name.split())
        key = normalize_supplier_name(legal_name)
        if not key:
            raise InvalidFieldError("legal_name", "a supplier name is required")
        tax_id = tax_id.strip() if tax_id and tax_id.strip() else None

        supplier_id = await self._create(legal_name, key, tax_id)
        supplier = await self.store.get_supplier(supplier_id)
        invoice.supplier_ref = supplier.id
        invoice.supplier_suggestion = None
        if invoice.supplier_tax_id is None and tax_id:
            invoice.supplier_tax_id = tax_id
        supplier_matches_total.labels(method=MatchMethod.CREATED.value).inc()
        return supplier
