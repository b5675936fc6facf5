"""Async task definitions for invoice processing.

Uses arq (async Redis queue) for background task processing. Each job runs
one document through the DocumentRouter and stores a JobResult in Redis.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import json
import logging
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from docengine.router.service import DocumentRouter
from docengine.shared.config import Settings, get_settings
from docengine.shared.errors import ExtractionExhaustedError
from docengine.shared.log import configure_logging
from docengine.templates.store import InMemoryTemplateStore

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400


def _now() -> str:
    return datetime.now(UTC).isoformat()


class JobResult(BaseModel):
    """Result of a background job.

    Attributes:
        job_id: Unique job identifier
        status: Job status (processing, completed, failed)
        method_used: 'template', 'ai' or 'ai-multimodal'
        template_id: Template used or compared against
        template_score: Best template score, if scored
        tier: Routing tier, if scored
        model_used: AI model that produced the document
        needs_review: Lower-confidence result
        document: Extracted document as JSON-compatible dict
        validation_errors: Full validation errors of the returned document
        error_stage: 'ocr' or 'ai' when a fallback chain was exhausted
        error: Error message (if failed)
        created_at: Job creation timestamp
        completed_at: Job completion timestamp
    """

    job_id: str
    status: str
    method_used: str | None = None
    template_id: str | None = None
    template_score: float | None = None
    tier: str | None = None
    model_used: str | None = None
    needs_review: bool = False
    document: dict[str, Any] | None = None
    validation_errors: list[str] = []
    error_stage: str | None = None
    error: str | None = None
    created_at: str
    completed_at: str | None = None


async def _store_result(redis: Any, result: JobResult) -> None:
    await redis.set(f"job:{result.job_id}", result.model_dump_json(), ex=JOB_TTL_SECONDS)


async def process_invoice(
    ctx: dict[str, Any],
    job_id: str,
    file_content: bytes | None = None,
    filename: str | None = None,
    text: str | None = None,
) -> dict[str, Any]:
    """Route one invoice and record the outcome.

    Args:
        ctx: arq context (contains redis connection and the router)
        job_id: Unique job identifier
        file_content: Raw file bytes, if a source file is available
        filename: Original filename (its suffix selects the media type)
        text: OCR text, if already available

    Returns:
        JobResult as dict
    """
    logger.info(f"Processing invoice job {job_id}")

    redis = ctx["redis"]
    router: DocumentRouter = ctx["router"]
    result = JobResult(job_id=job_id, status="processing", created_at=_now())
    await _store_result(redis, result)

    tmp_path: Path | None = None
    try:
        if file_content is not None:
            suffix = Path(filename).suffix if filename else ".bin"
            with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
                tmp.write(file_content)
                tmp_path = Path(tmp.name)

        routed = await router.route(text=text, file_path=tmp_path)
        await router.drain()

        result.status = "completed"
        result.method_used = routed.method_used
        result.template_id = routed.template_id
        result.template_score = routed.template_score
        result.tier = routed.tier
        result.model_used = routed.model_used
        result.needs_review = routed.needs_review
        result.document = json.loads(routed.document.model_dump_json())
        result.validation_errors = routed.validation.errors
    except ExtractionExhaustedError as e:
        logger.error(f"Job {job_id} exhausted the {e.stage} stage: {e}")
        result.status = "failed"
        result.error_stage = e.stage
        result.error = str(e)
    except Exception as e:
        logger.exception(f"Job {job_id} failed with error: {e}")
        result.status = "failed"
        result.error = str(e)
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()

    result.completed_at = _now()
    await _store_result(redis, result)
    _save_store(ctx)
    logger.info(f"Job {job_id} completed with status: {result.status}")

    return result.model_dump()


def _save_store(ctx: dict[str, Any]) -> None:
    settings: Settings = ctx["settings"]
    store = ctx.get("store")
    if settings.template_store_path and isinstance(store, InMemoryTemplateStore):
        try:
            store.save(settings.template_store_path)
        except OSError:
            logger.exception(f"Could not save template store to {settings.template_store_path}")


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook: load templates and build the router once."""
    settings = ctx.get("settings") or get_settings()
    configure_logging(settings)
    logger.info("Initializing worker services...")

    if settings.template_store_path:
        store = InMemoryTemplateStore.load(settings.template_store_path)
    else:
        store = InMemoryTemplateStore()

    ctx["settings"] = settings
    ctx["store"] = store
    ctx["router"] = DocumentRouter.from_settings(settings, store)
    logger.info(f"Worker services initialized ({len(store.list_templates())} templates)")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook: finish learning and persist templates."""
    logger.info("Worker shutting down...")
    router: DocumentRouter | None = ctx.get("router")
    if router is not None:
        await router.drain()
    if "settings" in ctx:
        _save_store(ctx)


def redis_settings_from_url(url: str) -> Any:
    """arq RedisSettings for a redis:// URL."""
    from arq.connections import RedisSettings

    return RedisSettings.from_dsn(url)


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout and concurrency
    """

    functions = [process_invoice]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    max_jobs = 5
    job_timeout = 600
