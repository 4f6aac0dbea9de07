"""Price reconciliation against each supplier's price history.

For every line item of an invoice with a resolved supplier, the most recent
observed price for (supplier, item key) is the baseline:

    deviation = (new - baseline) / baseline

|deviation| below the minor threshold is None, below the major threshold is
Minor, anything else is Major and raises a PriceAlert. Items without a
baseline are Unknown; their price becomes the first baseline.

Assessment and commit are separate phases: observations and alerts are only
appended once the invoice itself has been persisted.
Re-assessing a corrected invoice classifies every line again against history
from other invoices; alerts that no longer apply are retired, not deleted.
"""

import logging
from datetime import datetime
from decimal import Decimal

from prometheus_client import Counter
from pydantic import BaseModel

from services.domain.models import (
    Invoice,
    PriceAlert,
    PriceDeviation,
    PriceObservation,
    utc_now,
)
from services.shared.config import Settings
from services.store.base import PriceStore

logger = logging.getLogger(__name__)


price_classifications_total = Counter(
    "price_classifications_total",
    "Line item price classifications",
    ["deviation"],
)

price_alerts_total = Counter(
    "price_alerts_total",
    "Price alerts raised for Major deviations",
)


def classify_deviation(
    baseline: Decimal | None,
    new_price: Decimal,
    minor_threshold: float,
    major_threshold: float,
) -> tuple[PriceDeviation, Decimal | None]:
    """Classify a price against its baseline.

    Args:
        baseline: Most recent observed price, or None when the item is new
        new_price: Price on the current invoice
        minor_threshold: Absolute deviation at which a change becomes Minor
        major_threshold: Absolute deviation at which a change becomes Major

    Returns:
        (classification, signed deviation ratio or None without a baseline)
    """
    if baseline is None:
        return PriceDeviation.UNKNOWN, None
    if baseline == 0:
        # Any price after a zero baseline is a full change
        if new_price == 0:
            return PriceDeviation.NONE, Decimal("0")
        return PriceDeviation.MAJOR, Decimal("1")

    ratio = (new_price - baseline) / baseline
    magnitude = abs(ratio)
    if magnitude < Decimal(str(minor_threshold)):
        return PriceDeviation.NONE, ratio
    if magnitude < Decimal(str(major_threshold)):
        return PriceDeviation.MINOR, ratio
    return PriceDeviation.MAJOR, ratio


class LineAssessment(BaseModel):
    index: int
    item_key: str
    description: str
    new_price: Decimal
    deviation: PriceDeviation
    deviation_ratio: Decimal | None = None
    baseline_price: Decimal | None = None
    baseline_observed_at: datetime | None = None
    # False when this invoice already recorded the same price for the item
    record: bool = True


class PriceAssessment(BaseModel):
    """Pending price classifications for one invoice, not yet committed."""

    invoice_id: str
    supplier_id: str
    lines: list[LineAssessment]

    @property
    def major_lines(self) -> list[LineAssessment]:
        return [line for line in self.lines if line.deviation == PriceDeviation.MAJOR]


class PriceReconciliationEngine:
    """Classifies line prices and maintains the append-only observation log."""

    def __init__(self, store: PriceStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    async def _baseline(
        self, supplier_id: str, item_key: str, invoice_id: str
    ) -> PriceObservation | None:
        """Most recent observation for the item that did not come from this invoice."""
        history = await self.store.list_observations(supplier_id, item_key)
        for observation in reversed(history):
            if observation.source_invoice_id != invoice_id:
                return observation
        return None

    async def assess(self, invoice: Invoice) -> PriceAssessment | None:
        """Classify each priced line of the invoice and record it on the line items.

        Every line is classified again on each call, so corrected or replaced
        lines never keep a stale classification. The baseline excludes this
        invoice's own observations; a price this invoice already recorded for
        the item is not recorded twice.

        Returns:
            Assessment to commit, or None when the supplier is not resolved
        """
        for item in invoice.line_items:
            item.price_deviation = None
        if invoice.supplier_ref is None:
            return None
        supplier_id = invoice.supplier_ref

        recorded: dict[str, Decimal] = {}
        for observation in await self.store.list_observations(supplier_id):
            if observation.source_invoice_id == invoice.id:
                recorded[observation.item_key] = observation.price

        lines: list[LineAssessment] = []
        for index, item in enumerate(invoice.line_items):
            if item.unit_price is None or item.unit_price < 0:
                continue

            baseline = await self._baseline(supplier_id, item.item_key, invoice.id)
            deviation, ratio = classify_deviation(
                baseline.price if baseline else None,
                item.unit_price,
                self.settings.price_minor_threshold,
                self.settings.price_major_threshold,
            )
            item.price_deviation = deviation
            record = recorded.get(item.item_key) != item.unit_price
            if record:
                recorded[item.item_key] = item.unit_price
                price_classifications_total.labels(deviation=deviation.value).inc()
            lines.append(
                LineAssessment(
                    index=index,
                    item_key=item.item_key,
                    description=item.description,
                    new_price=item.unit_price,
                    deviation=deviation,
                    deviation_ratio=ratio,
                    baseline_price=baseline.price if baseline else None,
                    baseline_observed_at=baseline.observed_at if baseline else None,
                    record=record,
                )
            )
            if deviation == PriceDeviation.MAJOR and record:
                logger.warning(
                    f"Major price deviation on invoice {invoice.id} for {item.item_key}: "
                    f"{baseline.price if baseline else None} -> {item.unit_price}"
                )

        return PriceAssessment(invoice_id=invoice.id, supplier_id=supplier_id, lines=lines)

    async def commit(self, assessment: PriceAssessment) -> list[PriceAlert]:
        """Append observations for newly seen prices and reconcile the invoice's alerts.

        Alerts of this invoice that no longer match a Major line are retired;
        a Major line without an open alert gets a new one.

        Returns:
            Alerts raised by this commit
        """
        observed_at = utc_now()
        for line in assessment.lines:
            if not line.record:
                continue
            await self.store.append_observation(
                PriceObservation(
                    supplier_id=assessment.supplier_id,
                    item_key=line.item_key,
                    price=line.new_price,
                    observed_at=observed_at,
                    source_invoice_id=assessment.invoice_id,
                )
            )

        majors = {(line.item_key, line.new_price): line for line in assessment.major_lines}
        open_alerts = set()
        for alert in await self.store.list_alerts():
            if alert.invoice_id != assessment.invoice_id or alert.retired_at is not None:
                continue
            if (
                alert.supplier_id == assessment.supplier_id
                and (alert.item_key, alert.new_price) in majors
            ):
                open_alerts.add((alert.item_key, alert.new_price))
                continue
            await self.store.retire_alert(alert.id)
            logger.info(f"Retired price alert {alert.id} on invoice {alert.invoice_id}")

        alerts: list[PriceAlert] = []
        for key, line in majors.items():
            if key in open_alerts:
                continue
            alert = PriceAlert(
                invoice_id=assessment.invoice_id,
                supplier_id=assessment.supplier_id,
                item_key=line.item_key,
                description=line.description,
                baseline_price=line.baseline_price,
                new_price=line.new_price,
                deviation_pct=float(line.deviation_ratio),
                baseline_observed_at=line.baseline_observed_at,
            )
            await self.store.append_alert(alert)
            price_alerts_total.inc()
            alerts.append(alert)
        return alerts

    async def list_alerts(self, supplier_id: str | None = None) -> list[PriceAlert]:
        """Open alerts; retired ones stay in the store for audit."""
        return [
            alert
            for alert in await self.store.list_alerts(supplier_id)
            if alert.retired_at is None
        ]

    async def price_history(
        self,
        supplier_id: str,
        item_key: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PriceObservation]:
        return await self.store.list_observations(supplier_id, item_key, since, until)
