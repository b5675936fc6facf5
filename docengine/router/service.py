"""Document router: chooses between learned templates and AI extraction.

State machine for one document:

    MULTIMODAL_ATTEMPT -> OCR_RECOVERY -> SUPPLIER_IDENTIFY -> TEMPLATE_SCORE
        -> HIGH_TIER | MEDIUM_TIER | LOW_TIER -> LEARN -> DONE

FATAL is reachable from any state and surfaces as OCRExhaustedError or
AIExhaustedError. Validation always runs after extraction and before any
learning decision; a document that fails validation never counts as a
template success. Learning and store errors are logged and counted but
never fail the route.
"""

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from docengine.extraction.base import ExtractionProvider
from docengine.extraction.factory import create_extraction_service
from docengine.extraction.schema import ParsedDocument
from docengine.ocr.factory import OCRService, create_fallback_ocr_service, create_ocr_service
from docengine.router import metrics
from docengine.router.ai_policy import AIAttempt, AIExtractionPolicy
from docengine.router.ocr_policy import RecoveredText, build_ocr_chain
from docengine.shared.config import Settings
from docengine.shared.errors import AIExhaustedError, OCRExhaustedError
from docengine.templates.fingerprint import FingerprintEngine
from docengine.templates.learning import TemplateLearner, similarity
from docengine.templates.matcher import SupplierMatcher
from docengine.templates.models import Template
from docengine.templates.parser import TemplateParser
from docengine.templates.store import TemplateStore
from docengine.validation.service import ValidationEngine, ValidationResult

logger = logging.getLogger(__name__)

R = TypeVar("R")

NON_CAPABLE_PENALTY = 0.5

Method = Literal["template", "ai", "ai-multimodal"]
Tier = Literal["high", "medium", "low"]
OCRSourceLabel = Literal["provided", "primary", "local-fallback"]


class RouteState(StrEnum):
    MULTIMODAL_ATTEMPT = "MULTIMODAL_ATTEMPT"
    OCR_RECOVERY = "OCR_RECOVERY"
    SUPPLIER_IDENTIFY = "SUPPLIER_IDENTIFY"
    TEMPLATE_SCORE = "TEMPLATE_SCORE"
    HIGH_TIER = "HIGH_TIER"
    MEDIUM_TIER = "MEDIUM_TIER"
    LOW_TIER = "LOW_TIER"
    LEARN = "LEARN"
    DONE = "DONE"
    FATAL = "FATAL"


class RoutingResult(BaseModel):
    """Extraction result with provenance, handed to downstream consumers.

    Attributes:
        document: Extracted document
        method_used: 'template', 'ai' or 'ai-multimodal'
        template_id: Template used or compared against, if any
        template_score: Best template score after penalty, if scored
        tier: Tier chosen from template_score
        model_used: AI model that produced the document
        ocr_source: Where the text came from
        needs_review: Lower-confidence result (local OCR, failed full validation)
        validation: Full validation of the returned document
        ocr_text: Text the document was read from, when available
    """

    document: ParsedDocument
    method_used: Method
    template_id: str | None = None
    template_score: float | None = None
    tier: Tier | None = None
    model_used: str | None = None
    ocr_source: OCRSourceLabel | None = None
    needs_review: bool = False
    validation: ValidationResult
    ocr_text: str | None = None


class _Context:
    """Per-document routing state."""

    def __init__(self, file_path: Path | None) -> None:
        self.route_id = uuid4().hex[:8]
        self.file_path = file_path
        self.text: str | None = None
        self.ocr_source: OCRSourceLabel | None = None
        self.needs_review = False
        self.tax_id: str | None = None
        self.supplier_name: str | None = None
        self.templates: list[Template] = []


class DocumentRouter:
    """Top-level orchestrator for one document at a time.

    Args:
        settings: Application settings (thresholds, timeouts, flags)
        store: Template/supplier store shared with the learner
        provider: AI extraction provider
        ocr: Primary OCR service (None disables OCR recovery)
        local_ocr: Local fallback OCR service
    """

    def __init__(
        self,
        settings: Settings,
        store: TemplateStore,
        provider: ExtractionProvider,
        ocr: OCRService | None = None,
        local_ocr: OCRService | None = None,
        validator: ValidationEngine | None = None,
        fingerprint_engine: FingerprintEngine | None = None,
        parser: TemplateParser | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.provider = provider
        self.ocr = ocr
        self.local_ocr = local_ocr
        self.validator = validator or ValidationEngine(settings)
        self.fingerprints = fingerprint_engine or FingerprintEngine(settings)
        self.parser = parser or TemplateParser()
        self.matcher = SupplierMatcher(store)
        self.learner = TemplateLearner(store, settings, self.fingerprints, self.matcher)
        self.policy = AIExtractionPolicy(provider, settings, self.validator, local_ocr)
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, store: TemplateStore) -> "DocumentRouter":
        """Build a router with the providers named in settings."""
        return cls(
            settings,
            store,
            provider=create_extraction_service(settings),
            ocr=create_ocr_service(settings),
            local_ocr=create_fallback_ocr_service(settings),
        )

    def _enter(self, ctx: _Context, state: RouteState, detail: str = "") -> None:
        logger.info(f"[{ctx.route_id}] {state.value}{': ' + detail if detail else ''}")

    async def route(
        self, text: str | None = None, file_path: str | Path | None = None
    ) -> RoutingResult:
        """Extract a document, choosing the cheapest trustworthy strategy.

        Args:
            text: OCR text, if already available
            file_path: Source image or PDF, if available

        Returns:
            RoutingResult with the document and its provenance

        Raises:
            ValueError: If neither text nor file_path is given
            OCRExhaustedError: No usable text could be obtained
            AIExhaustedError: Every AI attempt failed where AI was required
        """
        if text is None and file_path is None:
            raise ValueError("route() needs text or file_path")

        ctx = _Context(Path(file_path) if file_path is not None else None)
        if text is not None and text.strip():
            ctx.text = text
            ctx.ocr_source = "provided"

        try:
            result = await self._route(ctx)
        except (OCRExhaustedError, AIExhaustedError) as e:
            self._enter(ctx, RouteState.FATAL, f"{e.stage} exhausted: {e}")
            metrics.extraction_exhausted_total.labels(e.stage).inc()
            raise

        metrics.documents_routed_total.labels(result.method_used, result.tier or "none").inc()
        self._enter(
            ctx,
            RouteState.DONE,
            f"method={result.method_used} tier={result.tier} template={result.template_id}",
        )
        return result

    async def _route(self, ctx: _Context) -> RoutingResult:
        if (
            ctx.file_path is not None
            and self.settings.multimodal_enabled
            and self.provider.supports_files
        ):
            self._enter(ctx, RouteState.MULTIMODAL_ATTEMPT, ctx.file_path.name)
            outcome = await self.policy.extract_from_file(ctx.file_path)
            if outcome.attempt is not None:
                return await self._finish_multimodal(ctx, outcome.attempt)
            logger.warning(f"[{ctx.route_id}] Multimodal extraction failed: {outcome.failures}")

        if ctx.text is None or len(ctx.text.strip()) < self.settings.ocr_min_text_length:
            self._enter(ctx, RouteState.OCR_RECOVERY)
            recovered = await self._recover_text(ctx)
            ctx.text = recovered.text
            ctx.ocr_source = recovered.source
            ctx.needs_review = recovered.needs_review
        text = ctx.text

        self._enter(ctx, RouteState.SUPPLIER_IDENTIFY)
        ctx.tax_id = self.matcher.extract_tax_id(text)
        ctx.supplier_name = self.matcher.extract_supplier_name(text)
        ctx.templates = self._safe(self.matcher.find_templates, ctx.tax_id, ctx.supplier_name) or []
        logger.info(
            f"[{ctx.route_id}] tax_id={ctx.tax_id} supplier={ctx.supplier_name!r} "
            f"templates={len(ctx.templates)}"
        )
        if not ctx.templates:
            return await self._ai_and_learn(ctx)

        self._enter(ctx, RouteState.TEMPLATE_SCORE)
        best, score = self.select_template(text, ctx.templates)
        if best is None:
            return await self._ai_and_learn(ctx)
        metrics.template_match_score.observe(score)
        logger.info(f"[{ctx.route_id}] Best template {best.id} ({best.name}) score={score:.1f}")

        if score >= self.settings.router_high_tier:
            self._enter(ctx, RouteState.HIGH_TIER, f"score={score:.1f}")
            document = self.parser.parse(text, best)
            validation = self.validator.validate(document)
            if validation.valid:
                await self._learn(ctx, self.learner.update_stats, best.id, True)
                return RoutingResult(
                    document=document,
                    method_used="template",
                    template_id=best.id,
                    template_score=score,
                    tier="high",
                    ocr_source=ctx.ocr_source,
                    needs_review=ctx.needs_review,
                    validation=validation,
                    ocr_text=text,
                )
            logger.warning(
                f"[{ctx.route_id}] Template parse failed validation: {validation.errors[:3]}"
            )
            await self._learn(ctx, self.learner.update_stats, best.id, False)
            return await self._medium_tier(ctx, best, score, "high", failure_recorded=True)

        if score >= self.settings.router_medium_tier:
            self._enter(ctx, RouteState.MEDIUM_TIER, f"score={score:.1f}")
            return await self._medium_tier(ctx, best, score, "medium", failure_recorded=False)

        self._enter(ctx, RouteState.LOW_TIER, f"score={score:.1f}")
        return await self._low_tier(ctx, best, score)

    def select_template(
        self, text: str, templates: list[Template]
    ) -> tuple[Template | None, float]:
        """Best fingerprinted template and its score.

        Templates that cannot produce a parse (empty header or table config)
        have their score halved; on equal scores a parse-capable template wins.
        """
        best: Template | None = None
        best_key: tuple[float, bool] = (-1.0, False)
        for template in templates:
            if template.fingerprint is None:
                continue
            score = self.fingerprints.score(text, template.fingerprint).score
            if not template.is_parse_capable:
                score *= NON_CAPABLE_PENALTY
            key = (score, template.is_parse_capable)
            if key > best_key:
                best, best_key = template, key
        return best, max(best_key[0], 0.0)

    async def _recover_text(self, ctx: _Context) -> RecoveredText:
        if ctx.file_path is None:
            raise OCRExhaustedError("No usable text and no source file to OCR")
        chain = build_ocr_chain(self.settings, ctx.file_path, self.ocr, self.local_ocr)
        outcome = await chain.run()
        if outcome.result is None:
            raise OCRExhaustedError("No usable text after all OCR engines", outcome.reasons())
        recovered = outcome.result.value
        if recovered.needs_review:
            logger.warning(f"[{ctx.route_id}] Using local OCR fallback text; flagged for review")
        return recovered

    async def _run_ai(self, ctx: _Context) -> AIAttempt:
        outcome = await self.policy.extract(ctx.text or "", ctx.file_path)
        if outcome.attempt is None:
            raise AIExhaustedError("All AI extraction attempts failed", outcome.failures)
        if outcome.attempt.input_kind == "local-ocr" and outcome.attempt.text:
            ctx.text = outcome.attempt.text
            ctx.ocr_source = "local-fallback"
            ctx.needs_review = True
        return outcome.attempt

    def _ai_result(
        self,
        ctx: _Context,
        attempt: AIAttempt,
        validation: ValidationResult,
        template: Template | None = None,
        score: float | None = None,
        tier: Tier | None = None,
    ) -> RoutingResult:
        return RoutingResult(
            document=attempt.document,
            method_used="ai",
            template_id=template.id if template else None,
            template_score=score,
            tier=tier,
            model_used=attempt.model,
            ocr_source=ctx.ocr_source,
            needs_review=ctx.needs_review or not validation.valid,
            validation=validation,
            ocr_text=ctx.text,
        )

    async def _ai_and_learn(self, ctx: _Context) -> RoutingResult:
        attempt = await self._run_ai(ctx)
        validation = self.validator.validate(attempt.document)
        if validation.valid:
            self._enter(ctx, RouteState.LEARN, "learning from AI extraction")
            event = await self._learn(
                ctx,
                self.learner.learn,
                attempt.document,
                ctx.text or "",
                ctx.tax_id,
                ctx.supplier_name,
            )
            if event is not None:
                metrics.template_learning_events_total.labels(event.action).inc()
        else:
            logger.info(f"[{ctx.route_id}] Not learning from invalid AI document")
        return self._ai_result(ctx, attempt, validation)

    async def _medium_tier(
        self,
        ctx: _Context,
        template: Template,
        score: float,
        tier: Tier,
        failure_recorded: bool,
    ) -> RoutingResult:
        attempt = await self._run_ai(ctx)
        validation = self.validator.validate(attempt.document)
        if not validation.valid:
            logger.info(f"[{ctx.route_id}] AI document failed validation; template left alone")
            return self._ai_result(ctx, attempt, validation, template, score, tier)

        text = ctx.text or ""
        parsed = self.parser.parse(text, template)
        agreement = similarity(attempt.document, parsed)
        self._enter(ctx, RouteState.LEARN, f"similarity={agreement:.2f}")

        if agreement >= self.settings.refine_similarity_threshold:
            await self._learn(ctx, self.learner.refine, template, attempt.document, text)
            metrics.template_learning_events_total.labels("refined").inc()
        elif agreement >= self.settings.variant_similarity_threshold:
            if not failure_recorded:
                await self._learn(ctx, self.learner.update_stats, template.id, False)
                metrics.template_learning_events_total.labels("failure").inc()
        else:
            await self._create_variant(ctx, template, attempt.document, text)

        return self._ai_result(ctx, attempt, validation, template, score, tier)

    async def _low_tier(self, ctx: _Context, best: Template, score: float) -> RoutingResult:
        attempt = await self._run_ai(ctx)
        validation = self.validator.validate(attempt.document)
        if not validation.valid:
            logger.info(f"[{ctx.route_id}] AI document failed validation; not learning")
            return self._ai_result(ctx, attempt, validation, best, score, "low")

        text = ctx.text or ""
        self._enter(ctx, RouteState.LEARN, "matching AI result against templates")
        match, agreement = None, 0.0
        for template in ctx.templates:
            if not template.is_parse_capable:
                continue
            candidate = similarity(attempt.document, self.parser.parse(text, template))
            if candidate > agreement:
                match, agreement = template, candidate

        if match is not None and agreement >= self.settings.refine_similarity_threshold:
            logger.info(
                f"[{ctx.route_id}] AI result matches template {match.id} "
                f"despite low score (similarity={agreement:.2f})"
            )
            await self._learn(ctx, self.learner.update_stats, match.id, True)
            metrics.template_learning_events_total.labels("success").inc()
        else:
            await self._create_variant(ctx, best, attempt.document, text)

        return self._ai_result(ctx, attempt, validation, best, score, "low")

    async def _create_variant(
        self, ctx: _Context, template: Template, document: ParsedDocument, text: str
    ) -> None:
        supplier = self._safe(self.store.get_supplier, template.supplier_id)
        if supplier is None:
            logger.warning(f"[{ctx.route_id}] Supplier {template.supplier_id} missing; no variant")
            return
        created = await self._learn(ctx, self.learner.create_variant, document, text, supplier)
        if created is not None:
            metrics.template_learning_events_total.labels("variant").inc()

    async def _learn(self, ctx: _Context, fn: Callable[..., R], *args: Any) -> R | None:
        """Run a learning/store call off the event loop; errors never fail the route."""
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception:
            logger.exception(f"[{ctx.route_id}] Learning step {fn.__name__} failed")
            metrics.learning_failures_total.inc()
            return None

    def _safe(self, fn: Callable[..., R], *args: Any) -> R | None:
        try:
            return fn(*args)
        except Exception:
            logger.exception(f"Store call {fn.__name__} failed")
            metrics.learning_failures_total.inc()
            return None

    async def _finish_multimodal(self, ctx: _Context, attempt: AIAttempt) -> RoutingResult:
        validation = self.validator.validate(attempt.document)
        if self.settings.learn_in_background:
            task = asyncio.create_task(self._learn_from_multimodal(ctx, attempt, validation))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        else:
            await self._learn_from_multimodal(ctx, attempt, validation)

        return RoutingResult(
            document=attempt.document,
            method_used="ai-multimodal",
            model_used=attempt.model,
            ocr_source=ctx.ocr_source,
            needs_review=not validation.valid,
            validation=validation,
            ocr_text=ctx.text,
        )

    async def _learn_from_multimodal(
        self, ctx: _Context, attempt: AIAttempt, validation: ValidationResult
    ) -> None:
        if not validation.valid:
            logger.info(f"[{ctx.route_id}] Multimodal document failed validation; not learning")
            return
        try:
            if ctx.text is None:
                recovered = await self._recover_text(ctx)
                ctx.text = recovered.text
        except OCRExhaustedError as e:
            logger.warning(f"[{ctx.route_id}] No OCR text to learn from: {e}")
            return

        text = ctx.text
        self._enter(ctx, RouteState.LEARN, "learning from multimodal extraction")
        event = await self._learn(
            ctx,
            self.learner.learn,
            attempt.document,
            text,
            self.matcher.extract_tax_id(text),
            self.matcher.extract_supplier_name(text),
        )
        if event is not None:
            metrics.template_learning_events_total.labels(event.action).inc()

    async def drain(self) -> None:
        """Wait for background learning tasks to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
