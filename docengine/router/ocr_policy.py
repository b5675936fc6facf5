"""OCR recovery chain: primary engine, then the local fallback engine.

OCR services are synchronous, so each attempt runs in a worker thread under
a timeout. Text shorter than ocr_min_text_length counts as a failure.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from docengine.ocr.factory import OCRService
from docengine.router import metrics
from docengine.router.chain import ChainOutcome, Failure, FallbackChain, Strategy, Success
from docengine.shared.config import Settings

logger = logging.getLogger(__name__)

OCRSource = Literal["primary", "local-fallback"]


@dataclass(frozen=True)
class RecoveredText:
    text: str
    source: OCRSource
    confidence: float | None = None

    @property
    def needs_review(self) -> bool:
        """Local fallback output is lower confidence."""
        return self.source == "local-fallback"


class OCRStrategy(Strategy[RecoveredText]):
    """One OCR engine applied to one file."""

    def __init__(
        self,
        service: OCRService,
        file_path: Path,
        source: OCRSource,
        timeout: float,
        min_length: int,
    ) -> None:
        self.service = service
        self.file_path = file_path
        self.source = source
        self.timeout = timeout
        self.min_length = min_length

    @property
    def name(self) -> str:
        return f"ocr:{self.source}:{type(self.service).__name__}"

    async def attempt(self) -> Success[RecoveredText] | Failure:
        provider = type(self.service).__name__
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.service.extract_text, self.file_path),
                timeout=self.timeout,
            )
        except TimeoutError:
            metrics.provider_attempts_total.labels(provider, self.source, "timeout").inc()
            return Failure(self.name, f"timed out after {self.timeout:.0f}s")
        except Exception as e:
            logger.exception(f"{self.name} raised {type(e).__name__}")
            metrics.provider_attempts_total.labels(provider, self.source, "failed").inc()
            return Failure(self.name, f"{type(e).__name__}: {e}")

        if not result.success:
            metrics.provider_attempts_total.labels(provider, self.source, "failed").inc()
            return Failure(self.name, result.error or "OCR failed")

        text = result.text.strip()
        if len(text) < self.min_length:
            metrics.provider_attempts_total.labels(provider, self.source, "rejected").inc()
            return Failure(self.name, f"text too short ({len(text)} chars)")

        metrics.provider_attempts_total.labels(provider, self.source, "success").inc()
        return Success(RecoveredText(text, self.source, result.confidence), self.name)


def build_ocr_chain(
    settings: Settings,
    file_path: Path,
    primary: OCRService | None,
    local: OCRService | None,
) -> FallbackChain[RecoveredText]:
    """Chain of the configured OCR engines for one file."""
    strategies: list[Strategy[RecoveredText]] = []
    if primary is not None:
        strategies.append(
            OCRStrategy(
                primary,
                file_path,
                "primary",
                settings.ocr_timeout_seconds,
                settings.ocr_min_text_length,
            )
        )
    if local is not None:
        strategies.append(
            OCRStrategy(
                local,
                file_path,
                "local-fallback",
                settings.ocr_timeout_seconds,
                settings.ocr_min_text_length,
            )
        )
    return FallbackChain(strategies)


async def run_local_ocr(
    settings: Settings, file_path: Path, local: OCRService
) -> ChainOutcome[RecoveredText]:
    """Run only the local engine (alternate text for the AI policy)."""
    return await build_ocr_chain(settings, file_path, None, local).run()
