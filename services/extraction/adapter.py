"""Extraction adapter: the single boundary between providers and the engine.

Calls the configured provider at most once per (content hash, hints) and
maps its payload into canonical InvoiceData. Concurrent requests for the same
key wait on a per-key lock and share the cached result. Failed extractions
are not cached, so a later resubmission can try again.
"""

import asyncio
import logging
import time
import weakref

from prometheus_client import Counter, Histogram

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.normalizer import normalize_payload
from services.extraction.schema import ExtractionRequest
from services.shared.config import Settings
from services.shared.errors import ExtractionError, ExtractionErrorKind
from services.shared.resilience import RetryPolicy, run_with_policy

logger = logging.getLogger(__name__)


extraction_requests_total = Counter(
    "extraction_requests_total",
    "Extraction requests by provider and outcome",
    ["provider", "outcome"],  # success, cached, or the failure kind
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Provider extraction duration in seconds, including retries",
    ["provider"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

extraction_low_confidence_total = Counter(
    "extraction_low_confidence_total",
    "Extractions flagged as low confidence",
    ["provider"],
)


def extraction_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.extraction_max_attempts,
        timeout=settings.extraction_timeout_seconds,
        backoff_initial=settings.retry_backoff_initial,
        backoff_max=settings.retry_backoff_max,
        backoff_jitter=settings.retry_backoff_jitter,
    )


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionError) and exc.transient


class ExtractionAdapter:
    """Runs provider calls under the retry policy and normalizes their output."""

    def __init__(self, provider: ExtractionProvider, settings: Settings) -> None:
        self.provider = provider
        self.settings = settings
        self.policy = extraction_policy(settings)
        self._cache: dict[str, ExtractionResult] = {}
        # Entries disappear once no request holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        """Extract canonical invoice data for a document.

        Never raises for provider failures: they are returned as an
        unsuccessful result carrying the error kind.

        Args:
            request: Document bytes, mime type, content hash and hints

        Returns:
            ExtractionResult, served from cache when the key was seen before
        """
        key = request.cache_key
        provider_name = self.provider.provider_name

        async with self._lock_for(key):
            cached = self._cache.get(key)
            if cached is not None:
                extraction_requests_total.labels(provider=provider_name, outcome="cached").inc()
                logger.debug(f"Extraction cache hit for {request.content_hash[:12]}")
                return cached.model_copy(deep=True, update={"cached": True})

            result = await self._call_provider(request)
            if result.success:
                self._cache[key] = result
                return result.model_copy(deep=True)
            return result

    async def _call_provider(self, request: ExtractionRequest) -> ExtractionResult:
        provider_name = self.provider.provider_name
        start = time.perf_counter()
        try:
            payload = await run_with_policy(
                lambda: asyncio.to_thread(self.provider.extract_document, request),
                self.policy,
                is_transient=_is_transient,
                on_timeout=lambda: ExtractionError(
                    ExtractionErrorKind.TIMEOUT,
                    f"Extraction timed out after {self.policy.timeout}s",
                ),
            )
            invoice_data = normalize_payload(payload)
        except ExtractionError as e:
            extraction_requests_total.labels(provider=provider_name, outcome=e.kind.value).inc()
            logger.error(
                f"Extraction failed for {request.content_hash[:12]} ({e.kind.value}): {e}"
            )
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=str(e),
                error_kind=e.kind,
                provider=provider_name,
            )
        except Exception as e:
            # Provider bugs are confined to the document that triggered them
            extraction_requests_total.labels(provider=provider_name, outcome="error").inc()
            logger.exception(f"Extraction crashed for {request.content_hash[:12]}: {e}")
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=f"Provider error: {type(e).__name__}: {e}",
                error_kind=ExtractionErrorKind.UNREADABLE,
                provider=provider_name,
            )
        finally:
            extraction_duration_seconds.labels(provider=provider_name).observe(
                time.perf_counter() - start
            )

        confidence = invoice_data.confidence_score
        low_confidence = (
            confidence is None or confidence < self.settings.extraction_confidence_threshold
        )
        if confidence is None:
            invoice_data.warnings.append("Provider reported no confidence score")
        if low_confidence:
            extraction_low_confidence_total.labels(provider=provider_name).inc()
            logger.info(
                f"Low-confidence extraction for {request.content_hash[:12]} "
                f"(confidence={confidence})"
            )

        extraction_requests_total.labels(provider=provider_name, outcome="success").inc()
        return ExtractionResult(
            invoice_data=invoice_data,
            success=True,
            provider=provider_name,
            low_confidence=low_confidence,
        )
