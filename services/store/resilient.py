"""Store wrapper applying the timeout and retry policy to every store call.

Only StoreUnavailableError is retried; conflicts, duplicates and not-found
errors propagate on the first attempt.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from services.domain.models import (
    DeletionRecord,
    Invoice,
    InvoiceStatus,
    PriceAlert,
    PriceObservation,
    RemissionRecord,
    Supplier,
)
from services.shared.config import Settings
from services.shared.errors import StoreUnavailableError
from services.shared.resilience import RetryPolicy, run_with_policy
from services.store.base import Store

T = TypeVar("T")


def store_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.store_max_attempts,
        timeout=settings.store_timeout_seconds,
        backoff_initial=settings.retry_backoff_initial,
        backoff_max=settings.retry_backoff_max,
        backoff_jitter=settings.retry_backoff_jitter,
    )


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, StoreUnavailableError)


class ResilientStore:
    """Delegates to an inner store with timeout and bounded retries."""

    def __init__(self, inner: Store, policy: RetryPolicy) -> None:
        self.inner = inner
        self.policy = policy

    async def _run(self, method: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await run_with_policy(
            lambda: method(*args, **kwargs),
            self.policy,
            is_transient=_is_transient,
            on_timeout=lambda: StoreUnavailableError(
                f"Store call {method.__name__} timed out after {self.policy.timeout}s"
            ),
        )

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return await self._run(self.inner.get_invoice, invoice_id)

    async def find_invoice_by_hash(self, content_hash: str) -> Invoice | None:
        return await self._run(self.inner.find_invoice_by_hash, content_hash)

    async def list_invoices(
        self, supplier_id: str | None = None, status: InvoiceStatus | None = None
    ) -> list[Invoice]:
        return await self._run(self.inner.list_invoices, supplier_id=supplier_id, status=status)

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        return await self._run(self.inner.insert_invoice, invoice)

    async def update_invoice(self, invoice: Invoice, expected_version: int) -> Invoice:
        return await self._run(self.inner.update_invoice, invoice, expected_version)

    async def soft_delete_invoice(
        self, invoice: Invoice, expected_version: int, record: DeletionRecord
    ) -> Invoice:
        return await self._run(self.inner.soft_delete_invoice, invoice, expected_version, record)

    async def list_deletions(self) -> list[DeletionRecord]:
        return await self._run(self.inner.list_deletions)

    async def get_supplier(self, supplier_id: str) -> Supplier:
        return await self._run(self.inner.get_supplier, supplier_id)

    async def find_supplier_by_key(self, normalized_name_key: str) -> Supplier | None:
        return await self._run(self.inner.find_supplier_by_key, normalized_name_key)

    async def find_supplier_by_tax_id(self, tax_id: str) -> Supplier | None:
        return await self._run(self.inner.find_supplier_by_tax_id, tax_id)

    async def list_suppliers(self) -> list[Supplier]:
        return await self._run(self.inner.list_suppliers)

    async def insert_supplier(self, supplier: Supplier) -> Supplier:
        return await self._run(self.inner.insert_supplier, supplier)

    async def append_observation(self, observation: PriceObservation) -> None:
        await self._run(self.inner.append_observation, observation)

    async def latest_observation(self, supplier_id: str, item_key: str) -> PriceObservation | None:
        return await self._run(self.inner.latest_observation, supplier_id, item_key)

    async def list_observations(
        self,
        supplier_id: str,
        item_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PriceObservation]:
        return await self._run(
            self.inner.list_observations, supplier_id, item_key=item_key, since=since, until=until
        )

    async def append_alert(self, alert: PriceAlert) -> None:
        await self._run(self.inner.append_alert, alert)

    async def retire_alert(self, alert_id: str) -> None:
        await self._run(self.inner.retire_alert, alert_id)

    async def list_alerts(self, supplier_id: str | None = None) -> list[PriceAlert]:
        return await self._run(self.inner.list_alerts, supplier_id)

    async def get_remission(self, remission_id: str) -> RemissionRecord:
        return await self._run(self.inner.get_remission, remission_id)

    async def insert_remission(self, remission: RemissionRecord) -> RemissionRecord:
        return await self._run(self.inner.insert_remission, remission)

    async def update_remission(self, remission: RemissionRecord) -> RemissionRecord:
        return await self._run(self.inner.update_remission, remission)

    async def list_remissions(
        self, supplier_id: str | None = None, unmatched_only: bool = False
    ) -> list[RemissionRecord]:
        return await self._run(
            self.inner.list_remissions, supplier_id=supplier_id, unmatched_only=unmatched_only
        )
