"""
Extraction Router - AI-first field extraction with regex fallback.

Stage 2 of the detection pipeline. Pre-filtered receipts are split into one
contiguous lane per configured provider; lanes run concurrently so each
provider spends its own rate-limit budget. Within a lane every receipt goes
through:

    budget check -> provider call (retried on 429/5xx/network) -> schema check
    -> accept if isSubscription and confidence >= 40
    -> otherwise regex fallback -> otherwise filtered

Every input receipt yields exactly one ExtractionResult.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed

from subwatch.config import (
    AI_ACCEPT_CONFIDENCE,
    EXTRACTION_LANE_CONCURRENCY,
    LLM_MAX_RETRIES,
    PROGRESS_REPORT_EVERY,
)
from subwatch.detection.models import Cadence, ParsingMethod, Receipt
from subwatch.detection.regex_extractor import RegexExtractor, classify_receipt_type
from subwatch.detection.types import ExtractionResult, RouterSummary
from subwatch.infrastructure.llm_budget import BudgetStatus, check_budget, record_llm_call
from subwatch.infrastructure.retry import (
    CircuitBreaker,
    ProviderError,
    ProviderResponseError,
    provider_retrying,
)
from subwatch.llm import build_providers
from subwatch.llm.base import ExtractionProvider
from subwatch.llm.prompts import (
    ProviderExtraction,
    build_extraction_prompt,
    parse_provider_response,
)
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event, time_block
from subwatch.utils.redaction import redact_subject

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, int], None]


class ExtractionRouter:
    """
    Fan receipts out across AI providers, falling back to regex per receipt.

    Args:
        providers: Lane providers; None builds them from the environment
        regex_extractor: Fallback parser
        lane_concurrency: Worker threads per lane (1 = strictly sequential)
        max_retries: Retries per provider call after the first attempt
        sleep_fn: Backoff sleep, injected as a no-op in tests
        budget_check: Daily AI call budget lookup
    """

    def __init__(
        self,
        providers: Sequence[ExtractionProvider] | None = None,
        regex_extractor: RegexExtractor | None = None,
        lane_concurrency: int = EXTRACTION_LANE_CONCURRENCY,
        max_retries: int = LLM_MAX_RETRIES,
        sleep_fn: Callable[[float], None] = time.sleep,
        budget_check: Callable[[str], BudgetStatus] = check_budget,
    ):
        self.providers = list(build_providers() if providers is None else providers)
        self.regex = regex_extractor or RegexExtractor()
        self.lane_concurrency = max(1, lane_concurrency)
        self.max_retries = max_retries
        self.sleep_fn = sleep_fn
        self.budget_check = budget_check
        self.breakers = {p.name: CircuitBreaker(stage=f"provider.{p.name}") for p in self.providers}
        self.last_summary = RouterSummary()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(
        self,
        receipts: Sequence[Receipt],
        progress_callback: ProgressCallback | None = None,
    ) -> list[ExtractionResult]:
        """
        Extract fields for every receipt.

        Args:
            receipts: Pre-filtered receipts
            progress_callback: Called as (lane, processed, total) every few
                receipts and at lane completion; its errors are ignored

        Returns:
            One ExtractionResult per receipt (order not guaranteed)
        """
        if not receipts:
            self.last_summary = RouterSummary()
            return []

        with time_block("detection.router.latency"):
            if not self.providers:
                results = self._run_lane(0, None, list(receipts), progress_callback)
            else:
                results = self._run_lanes(list(receipts), progress_callback)

        summary = RouterSummary.from_results(results)
        self.last_summary = summary
        counter("detection.router.ai", summary.ai)
        counter("detection.router.fallback", summary.regex_fallback)
        counter("detection.router.filtered", summary.filtered)

        logger.info(
            "Extraction complete: %d receipts (ai=%d, regex_fallback=%d, filtered=%d)",
            len(results),
            summary.ai,
            summary.regex_fallback,
            summary.filtered,
        )
        log_event(
            "detection.router.complete",
            total=len(results),
            ai=summary.ai,
            regex_fallback=summary.regex_fallback,
            filtered=summary.filtered,
            by_provider=summary.by_provider,
        )
        return results

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    def _run_lanes(
        self, receipts: list[Receipt], progress_callback: ProgressCallback | None
    ) -> list[ExtractionResult]:
        chunk_size = math.ceil(len(receipts) / len(self.providers))
        lanes = [
            (lane, provider, receipts[lane * chunk_size : (lane + 1) * chunk_size])
            for lane, provider in enumerate(self.providers)
        ]
        lanes = [lane for lane in lanes if lane[2]]

        logger.info(
            "Routing %d receipts across %d provider lane(s), %d per lane",
            len(receipts),
            len(lanes),
            chunk_size,
        )

        with ThreadPoolExecutor(max_workers=len(lanes), thread_name_prefix="extract-lane") as pool:
            futures = [
                pool.submit(self._run_lane, lane, provider, chunk, progress_callback)
                for lane, provider, chunk in lanes
            ]
            return [result for future in futures for result in future.result()]

    def _run_lane(
        self,
        lane: int,
        provider: ExtractionProvider | None,
        receipts: list[Receipt],
        progress_callback: ProgressCallback | None,
    ) -> list[ExtractionResult]:
        total = len(receipts)
        results: list[ExtractionResult] = []

        def record(result: ExtractionResult) -> None:
            results.append(result)
            processed = len(results)
            if processed % PROGRESS_REPORT_EVERY == 0 or processed == total:
                self._report_progress(progress_callback, lane, processed, total)

        if self.lane_concurrency == 1:
            for receipt in receipts:
                record(self._process(receipt, provider))
        else:
            with ThreadPoolExecutor(
                max_workers=self.lane_concurrency, thread_name_prefix=f"lane-{lane}"
            ) as pool:
                futures = [pool.submit(self._process, receipt, provider) for receipt in receipts]
                for future in as_completed(futures):
                    record(future.result())

        logger.info(
            "Lane %d (%s) complete: %d receipts",
            lane,
            provider.name if provider else "regex",
            total,
        )
        return results

    @staticmethod
    def _report_progress(
        callback: ProgressCallback | None, lane: int, processed: int, total: int
    ) -> None:
        if callback is None:
            return
        try:
            callback(lane, processed, total)
        except Exception as e:
            counter("detection.router.progress_error")
            logger.warning("Progress reporting failed (lane %d): %s", lane, e)

    # ------------------------------------------------------------------
    # Per receipt
    # ------------------------------------------------------------------

    def _process(self, receipt: Receipt, provider: ExtractionProvider | None) -> ExtractionResult:
        """Never raises: any failure becomes a filtered result."""
        try:
            if provider is not None:
                ai_result = self._try_ai(receipt, provider)
                if ai_result is not None:
                    return ai_result
            return self._fallback(receipt)
        except Exception as e:
            counter("detection.router.receipt_error")
            logger.error("Extraction failed for receipt %s: %s", receipt.id, e, exc_info=True)
            return ExtractionResult.filtered(receipt.id)

    def _try_ai(self, receipt: Receipt, provider: ExtractionProvider) -> ExtractionResult | None:
        """AI extraction, or None when the receipt should go to the fallback."""
        breaker = self.breakers[provider.name]
        if not breaker.allow_request():
            counter(f"detection.router.{provider.name}.circuit_open")
            return None

        budget = self.budget_check(receipt.user_id)
        if not budget.is_allowed:
            counter("detection.router.budget_exhausted")
            logger.warning("AI budget exhausted for %s: %s", receipt.user_id, budget.reason)
            return None

        prompt = build_extraction_prompt(receipt.subject, receipt.sender, receipt.body)

        try:
            response_text = self._call_with_retry(provider, prompt, receipt.user_id)
        except ProviderResponseError as e:
            breaker.record_success()
            counter(f"detection.router.{provider.name}.bad_response")
            logger.warning("%s returned an unusable response: %s", provider.name, e)
            return None
        except ProviderError as e:
            breaker.record_failure()
            counter(f"detection.router.{provider.name}.error")
            logger.warning(
                "%s failed for %s (status=%s), falling back to regex",
                provider.name,
                redact_subject(receipt.subject),
                e.status_code,
            )
            return None
        except Exception as e:
            breaker.record_failure()
            counter(f"detection.router.{provider.name}.error")
            logger.warning("%s call raised %s, falling back to regex", provider.name, e)
            return None

        breaker.record_success()

        try:
            extraction = parse_provider_response(response_text)
        except ProviderResponseError as e:
            counter(f"detection.router.{provider.name}.invalid_json")
            logger.warning("%s response failed validation: %s", provider.name, e)
            return None

        if not extraction.is_subscription or extraction.confidence < AI_ACCEPT_CONFIDENCE:
            counter("detection.router.ai_rejected")
            logger.debug(
                "AI declined %s (isSubscription=%s, confidence=%.0f)",
                redact_subject(receipt.subject),
                extraction.is_subscription,
                extraction.confidence,
            )
            return None

        return self._accept(receipt, provider, extraction)

    def _call_with_retry(self, provider: ExtractionProvider, prompt: str, user_id: str) -> str:
        for attempt in provider_retrying(self.max_retries, self.sleep_fn):
            with attempt:
                record_llm_call(user_id, provider.name)
                return provider.complete(prompt)
        raise AssertionError("unreachable: tenacity re-raises the last error")

    @staticmethod
    def _accept(
        receipt: Receipt, provider: ExtractionProvider, extraction: ProviderExtraction
    ) -> ExtractionResult:
        frequency = (extraction.frequency or "").strip().lower()
        text = f"{receipt.subject}\n{receipt.body}".lower()
        return ExtractionResult(
            receipt_id=receipt.id,
            method=ParsingMethod.AI,
            confidence=round(extraction.confidence / 100, 4),
            merchant=extraction.merchant,
            amount=extraction.amount,
            currency=extraction.currency or "USD",
            cadence=Cadence(frequency) if frequency in ("monthly", "yearly") else None,
            next_charge_date=extraction.parsed_next_billing_date(),
            receipt_type=classify_receipt_type(text, receipt.subject),
            reasoning=extraction.reasoning,
            provider=provider.name,
        )

    def _fallback(self, receipt: Receipt) -> ExtractionResult:
        parsed = self.regex.parse(receipt.sender, receipt.subject, receipt.body)
        return ExtractionResult.from_regex(receipt.id, parsed)
