"""AI extraction retry policy.

The configured models are tried in order (primary first), each as one
strategy of a FallbackChain. Inside a strategy the provider retries
transient errors itself; the strategy adds a timeout backstop and rejects
documents without line items. When every model fails on the text and a
source file is available, the local OCR engine produces alternate text and
the models are tried again on it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from docengine.extraction.base import ExtractionProvider
from docengine.extraction.schema import ParsedDocument
from docengine.ocr.factory import OCRService
from docengine.router import metrics
from docengine.router.chain import ChainOutcome, Failure, FallbackChain, Strategy, Success
from docengine.router.ocr_policy import run_local_ocr
from docengine.shared.config import Settings
from docengine.validation.service import ValidationEngine

logger = logging.getLogger(__name__)

InputKind = Literal["file", "text", "local-ocr"]


@dataclass(frozen=True)
class AIAttempt:
    """A lenient-valid document produced by one model."""

    document: ParsedDocument
    provider: str
    model: str
    input_kind: InputKind
    text: str | None = None


@dataclass
class PolicyOutcome:
    attempt: AIAttempt | None = None
    failures: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.attempt is not None


class ModelStrategy(Strategy[AIAttempt]):
    """One model applied to one input (file or text)."""

    def __init__(
        self,
        provider: ExtractionProvider,
        model: str,
        validator: ValidationEngine,
        timeout: float,
        text: str | None = None,
        file_path: Path | None = None,
        input_kind: InputKind = "text",
    ) -> None:
        if (text is None) == (file_path is None):
            raise ValueError("ModelStrategy needs exactly one of text or file_path")
        self.provider = provider
        self.model = model
        self.validator = validator
        self.timeout = timeout
        self.text = text
        self.file_path = file_path
        self.input_kind = input_kind

    @property
    def name(self) -> str:
        return f"{self.provider.provider_name}:{self.model}:{self.input_kind}"

    async def attempt(self) -> Success[AIAttempt] | Failure:
        provider = self.provider.provider_name
        try:
            async with asyncio.timeout(self.timeout):
                if self.file_path is not None:
                    result = await self.provider.extract_from_file(self.file_path, self.model)
                else:
                    result = await self.provider.extract_from_text(self.text or "", self.model)
        except TimeoutError:
            metrics.provider_attempts_total.labels(provider, self.model, "timeout").inc()
            return Failure(self.name, f"timed out after {self.timeout:.0f}s")
        except Exception as e:
            logger.exception(f"{self.name} raised {type(e).__name__}")
            metrics.provider_attempts_total.labels(provider, self.model, "failed").inc()
            return Failure(self.name, f"{type(e).__name__}: {e}")

        if not result.success or result.document is None:
            metrics.provider_attempts_total.labels(provider, self.model, "failed").inc()
            return Failure(self.name, result.error or "extraction failed")

        validation = self.validator.validate_extraction(result.document)
        if not validation.valid:
            metrics.provider_attempts_total.labels(provider, self.model, "rejected").inc()
            return Failure(self.name, "; ".join(validation.errors))

        metrics.provider_attempts_total.labels(provider, self.model, "success").inc()
        attempt = AIAttempt(
            document=result.document,
            provider=provider,
            model=self.model,
            input_kind=self.input_kind,
            text=self.text,
        )
        return Success(attempt, self.name)


class AIExtractionPolicy:
    """Runs the model chain against a file, a text and alternate OCR text."""

    def __init__(
        self,
        provider: ExtractionProvider,
        settings: Settings,
        validator: ValidationEngine | None = None,
        local_ocr: OCRService | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.validator = validator or ValidationEngine(settings)
        self.local_ocr = local_ocr

    @property
    def strategy_timeout(self) -> float:
        """Backstop covering every retry of one model, including backoff."""
        attempts = self.settings.ai_attempts_per_model
        return (
            self.settings.ai_timeout_seconds * attempts
            + self.settings.retry_backoff_max * (attempts - 1)
        )

    def _chain(
        self,
        text: str | None = None,
        file_path: Path | None = None,
        input_kind: InputKind = "text",
    ) -> FallbackChain[AIAttempt]:
        strategies: list[Strategy[AIAttempt]] = [
            ModelStrategy(
                self.provider,
                model,
                self.validator,
                self.strategy_timeout,
                text=text,
                file_path=file_path,
                input_kind=input_kind,
            )
            for model in self.provider.models()
        ]
        return FallbackChain(strategies, delay_seconds=self.settings.fallback_delay_seconds)

    @staticmethod
    def _outcome(chain: ChainOutcome[AIAttempt], failures: list[str]) -> PolicyOutcome:
        failures = failures + chain.reasons()
        if chain.result is not None:
            return PolicyOutcome(attempt=chain.result.value, failures=failures)
        return PolicyOutcome(failures=failures)

    async def extract_from_file(self, file_path: Path) -> PolicyOutcome:
        """Multimodal extraction straight from the source file."""
        if not self.provider.supports_files:
            return PolicyOutcome(failures=[f"{self.provider.provider_name}: files not supported"])
        chain = await self._chain(file_path=file_path, input_kind="file").run()
        return self._outcome(chain, [])

    async def extract(self, text: str, file_path: Path | None = None) -> PolicyOutcome:
        """Text extraction with local-OCR alternate text as last resort.

        Args:
            text: OCR text of the document
            file_path: Source file, enabling the local OCR retry

        Returns:
            PolicyOutcome with the first accepted attempt and all failures
        """
        chain = await self._chain(text=text).run()
        outcome = self._outcome(chain, [])
        if outcome.succeeded or file_path is None or self.local_ocr is None:
            return outcome

        logger.info("All models failed on the OCR text, retrying on local OCR text")
        ocr = await run_local_ocr(self.settings, file_path, self.local_ocr)
        if ocr.result is None:
            return PolicyOutcome(failures=outcome.failures + ocr.reasons())

        alternate = ocr.result.value.text
        if alternate.strip() == text.strip():
            return PolicyOutcome(failures=outcome.failures + ["local-ocr: same text as before"])

        retry = await self._chain(text=alternate, input_kind="local-ocr").run()
        return self._outcome(retry, outcome.failures)
