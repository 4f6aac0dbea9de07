"""Unit tests for price deviation classification and the price history."""

from decimal import Decimal

import pytest
from conftest import make_invoice

from services.domain.models import Invoice, LineItem, PriceDeviation
from services.pricing.service import PriceReconciliationEngine, classify_deviation
from services.shared.config import Settings
from services.store.memory import InMemoryStore


@pytest.fixture
def pricing(store: InMemoryStore, settings: Settings) -> PriceReconciliationEngine:
    return PriceReconciliationEngine(store, settings)


def priced_invoice(unit_price: str, **fields: object) -> Invoice:
    return make_invoice(
        line_items=[
            LineItem(
                sku="BOLT-1",
                description="Steel bolt",
                quantity=Decimal("10"),
                unit_price=Decimal(unit_price),
            )
        ],
        **fields,
    )


class TestClassifyDeviation:
    """Test threshold classification with the default 5% / 15% thresholds."""

    @pytest.mark.parametrize(
        ("new_price", "expected"),
        [
            ("100", PriceDeviation.NONE),
            ("104", PriceDeviation.NONE),
            ("96", PriceDeviation.NONE),
            ("105", PriceDeviation.MINOR),
            ("112", PriceDeviation.MINOR),
            ("88", PriceDeviation.MINOR),
            ("115", PriceDeviation.MAJOR),
            ("130", PriceDeviation.MAJOR),
            ("70", PriceDeviation.MAJOR),
        ],
    )
    def test_thresholds(self, new_price: str, expected: PriceDeviation) -> None:
        deviation, _ = classify_deviation(Decimal("100"), Decimal(new_price), 0.05, 0.15)

        assert deviation == expected

    def test_ratio_is_signed(self) -> None:
        _, ratio = classify_deviation(Decimal("100"), Decimal("88"), 0.05, 0.15)

        assert ratio == Decimal("-0.12")

    def test_no_baseline_is_unknown(self) -> None:
        assert classify_deviation(None, Decimal("10"), 0.05, 0.15) == (PriceDeviation.UNKNOWN, None)

    def test_zero_baseline(self) -> None:
        assert classify_deviation(Decimal("0"), Decimal("0"), 0.05, 0.15)[0] == PriceDeviation.NONE
        assert classify_deviation(Decimal("0"), Decimal("5"), 0.05, 0.15)[0] == PriceDeviation.MAJOR


class TestPriceReconciliationEngine:
    """Test assessment against the stored history and the commit phase."""

    @pytest.mark.asyncio
    async def test_first_price_is_unknown_and_becomes_baseline(
        self, pricing: PriceReconciliationEngine, store: InMemoryStore
    ) -> None:
        invoice = priced_invoice("100")

        assessment = await pricing.assess(invoice)
        alerts = await pricing.commit(assessment)  # type: ignore[arg-type]

        assert invoice.line_items[0].price_deviation == PriceDeviation.UNKNOWN
        assert alerts == []
        baseline = await store.latest_observation("supplier-1", "sku:BOLT-1")
        assert baseline is not None
        assert baseline.price == Decimal("100")
        assert baseline.source_invoice_id == invoice.id

    @pytest.mark.asyncio
    async def test_major_deviation_raises_alert(
        self, pricing: PriceReconciliationEngine, store: InMemoryStore
    ) -> None:
        await pricing.commit(await pricing.assess(priced_invoice("100")))  # type: ignore[arg-type]
        invoice = priced_invoice("130")

        assessment = await pricing.assess(invoice)
        alerts = await pricing.commit(assessment)  # type: ignore[arg-type]

        assert invoice.line_items[0].price_deviation == PriceDeviation.MAJOR
        assert len(alerts) == 1
        assert alerts[0].baseline_price == Decimal("100")
        assert alerts[0].new_price == Decimal("130")
        assert alerts[0].deviation_pct == pytest.approx(0.3)
        assert await pricing.list_alerts("supplier-1") == alerts

    @pytest.mark.asyncio
    async def test_minor_deviation_has_no_alert(self, pricing: PriceReconciliationEngine) -> None:
        await pricing.commit(await pricing.assess(priced_invoice("100")))  # type: ignore[arg-type]
        invoice = priced_invoice("112")

        alerts = await pricing.commit(await pricing.assess(invoice))  # type: ignore[arg-type]

        assert invoice.line_items[0].price_deviation == PriceDeviation.MINOR
        assert alerts == []

    @pytest.mark.asyncio
    async def test_baseline_is_most_recent_observation(
        self, pricing: PriceReconciliationEngine
    ) -> None:
        await pricing.commit(await pricing.assess(priced_invoice("100")))  # type: ignore[arg-type]
        await pricing.commit(await pricing.assess(priced_invoice("130")))  # type: ignore[arg-type]
        invoice = priced_invoice("132")

        await pricing.assess(invoice)

        assert invoice.line_items[0].price_deviation == PriceDeviation.NONE

    @pytest.mark.asyncio
    async def test_unresolved_supplier_is_not_assessed(
        self, pricing: PriceReconciliationEngine
    ) -> None:
        assert await pricing.assess(priced_invoice("100", supplier_ref=None)) is None

    @pytest.mark.asyncio
    async def test_corrected_price_is_reclassified(
        self, pricing: PriceReconciliationEngine, store: InMemoryStore
    ) -> None:
        """A misread price is compared against other invoices' history once corrected."""
        await pricing.commit(await pricing.assess(priced_invoice("100")))  # type: ignore[arg-type]
        invoice = priced_invoice("1000")
        (alert,) = await pricing.commit(await pricing.assess(invoice))  # type: ignore[arg-type]

        invoice.line_items[0].unit_price = Decimal("100")
        reassessment = await pricing.assess(invoice)
        raised = await pricing.commit(reassessment)  # type: ignore[arg-type]

        assert invoice.line_items[0].price_deviation == PriceDeviation.NONE
        assert raised == []
        assert await pricing.list_alerts("supplier-1") == []
        (retired,) = await store.list_alerts("supplier-1")
        assert retired.id == alert.id
        assert retired.retired_at is not None
        baseline = await store.latest_observation("supplier-1", "sku:BOLT-1")
        assert baseline is not None
        assert baseline.price == Decimal("100")
        assert baseline.source_invoice_id == invoice.id

        following = priced_invoice("100")
        await pricing.assess(following)
        assert following.line_items[0].price_deviation == PriceDeviation.NONE

    @pytest.mark.asyncio
    async def test_reassessing_unchanged_invoice_records_nothing_new(
        self, pricing: PriceReconciliationEngine, store: InMemoryStore
    ) -> None:
        await pricing.commit(await pricing.assess(priced_invoice("100")))  # type: ignore[arg-type]
        invoice = priced_invoice("130")
        await pricing.commit(await pricing.assess(invoice))  # type: ignore[arg-type]

        invoice.line_items[0].price_deviation = None
        raised = await pricing.commit(await pricing.assess(invoice))  # type: ignore[arg-type]

        assert invoice.line_items[0].price_deviation == PriceDeviation.MAJOR
        assert raised == []
        assert len(await pricing.list_alerts("supplier-1")) == 1
        history = await pricing.price_history("supplier-1", "sku:BOLT-1")
        assert [o.price for o in history] == [Decimal("100"), Decimal("130")]

    @pytest.mark.asyncio
    async def test_supplied_classification_is_overwritten(
        self, pricing: PriceReconciliationEngine
    ) -> None:
        await pricing.commit(await pricing.assess(priced_invoice("100")))  # type: ignore[arg-type]
        invoice = priced_invoice("130")
        invoice.line_items[0].price_deviation = PriceDeviation.NONE

        await pricing.assess(invoice)

        assert invoice.line_items[0].price_deviation == PriceDeviation.MAJOR

    @pytest.mark.asyncio
    async def test_price_history_is_ordered(self, pricing: PriceReconciliationEngine) -> None:
        for price in ("100", "101", "102"):
            assessment = await pricing.assess(priced_invoice(price))
            await pricing.commit(assessment)  # type: ignore[arg-type]

        history = await pricing.price_history("supplier-1", "sku:BOLT-1")

        assert [o.price for o in history] == [Decimal("100"), Decimal("101"), Decimal("102")]
