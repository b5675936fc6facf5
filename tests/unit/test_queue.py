"""Unit tests for async queue functionality.

Tests task definitions, worker hooks and queue configuration.
"""

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docengine.extraction.schema import ParsedDocument
from docengine.queue import worker
from docengine.queue.tasks import (
    JOB_TTL_SECONDS,
    JobResult,
    WorkerSettings,
    process_invoice,
    redis_settings_from_url,
    shutdown,
    startup,
)
from docengine.router.service import DocumentRouter, RoutingResult
from docengine.shared.config import Settings
from docengine.shared.errors import AIExhaustedError
from docengine.templates.store import InMemoryTemplateStore
from docengine.validation.service import ValidationResult


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        redis_url="redis://localhost:6379/0",
        template_store_path=str(tmp_path / "templates.json"),
        ocr_provider="tesseract",
    )


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis connection."""
    mock = AsyncMock()
    mock.set = AsyncMock()
    return mock


@pytest.fixture
def routed(invoice_document: ParsedDocument) -> RoutingResult:
    return RoutingResult(
        document=invoice_document,
        method_used="template",
        template_id="tpl-1",
        template_score=97.5,
        tier="high",
        validation=ValidationResult(),
    )


@pytest.fixture
def mock_router(routed: RoutingResult) -> MagicMock:
    router = MagicMock()
    router.route = AsyncMock(return_value=routed)
    router.drain = AsyncMock()
    return router


@pytest.fixture
def ctx(settings: Settings, mock_redis: AsyncMock, mock_router: MagicMock) -> dict[str, Any]:
    return {
        "redis": mock_redis,
        "settings": settings,
        "store": InMemoryTemplateStore(),
        "router": mock_router,
    }


def stored_results(redis: AsyncMock) -> list[dict[str, Any]]:
    return [json.loads(call.args[1]) for call in redis.set.await_args_list]


class TestProcessInvoice:
    """Test process_invoice task."""

    @pytest.mark.asyncio
    async def test_text_job_completed(
        self, ctx: dict[str, Any], mock_redis: AsyncMock, mock_router: MagicMock
    ) -> None:
        result = await process_invoice(ctx, "job-1", text="FATURA ...")

        assert result["status"] == "completed"
        assert result["method_used"] == "template"
        assert result["tier"] == "high"
        assert result["document"]["header"]["grand_total"] == "30.75"
        mock_router.route.assert_awaited_once_with(text="FATURA ...", file_path=None)
        mock_router.drain.assert_awaited_once()

        statuses = [r["status"] for r in stored_results(mock_redis)]
        assert statuses == ["processing", "completed"]
        assert mock_redis.set.await_args.args[0] == "job:job-1"
        assert mock_redis.set.await_args.kwargs["ex"] == JOB_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_file_written_to_temp_and_removed(
        self, ctx: dict[str, Any], mock_router: MagicMock
    ) -> None:
        seen: dict[str, Any] = {}

        async def route(text: str | None, file_path: Path | None) -> RoutingResult:
            assert file_path is not None
            seen["path"] = file_path
            seen["suffix"] = file_path.suffix
            seen["content"] = file_path.read_bytes()
            return mock_router.route.return_value

        mock_router.route.side_effect = route

        await process_invoice(ctx, "job-2", file_content=b"%PDF-1.4", filename="fatura.pdf")

        assert seen["suffix"] == ".pdf"
        assert seen["content"] == b"%PDF-1.4"
        assert not seen["path"].exists()

    @pytest.mark.asyncio
    async def test_exhausted_stage_is_reported(
        self, ctx: dict[str, Any], mock_router: MagicMock
    ) -> None:
        mock_router.route.side_effect = AIExhaustedError("All AI extraction attempts failed")

        result = await process_invoice(ctx, "job-3", text="FATURA ...")

        assert result["status"] == "failed"
        assert result["error_stage"] == "ai"
        assert "All AI extraction attempts failed" in result["error"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(
        self, ctx: dict[str, Any], mock_router: MagicMock
    ) -> None:
        mock_router.route.side_effect = RuntimeError("boom")

        result = await process_invoice(ctx, "job-4", text="FATURA ...")

        assert result["status"] == "failed"
        assert result["error_stage"] is None
        assert result["error"] == "boom"
        assert result["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_store_saved_after_job(self, ctx: dict[str, Any], settings: Settings) -> None:
        await process_invoice(ctx, "job-5", text="FATURA ...")
        assert Path(str(settings.template_store_path)).exists()


class TestWorkerHooks:
    @pytest.mark.asyncio
    async def test_startup_builds_router_from_snapshot(self, settings: Settings) -> None:
        store = InMemoryTemplateStore()
        store.find_or_create_supplier("502345678", "ACME Lda", "acme lda")
        store.save(str(settings.template_store_path))
        ctx: dict[str, Any] = {"settings": settings}

        await startup(ctx)

        assert isinstance(ctx["router"], DocumentRouter)
        assert ctx["store"].find_supplier("502345678", None) is not None

    @pytest.mark.asyncio
    async def test_shutdown_drains_and_saves(
        self, ctx: dict[str, Any], settings: Settings, mock_router: MagicMock
    ) -> None:
        await shutdown(ctx)

        mock_router.drain.assert_awaited_once()
        assert Path(str(settings.template_store_path)).exists()


class TestWorkerSettings:
    """Test WorkerSettings configuration."""

    def test_worker_functions_registered(self) -> None:
        assert process_invoice in WorkerSettings.functions
        assert WorkerSettings.on_startup is startup
        assert WorkerSettings.on_shutdown is shutdown

    def test_redis_settings_from_url(self) -> None:
        redis_settings = redis_settings_from_url("redis://cache:6380/2")
        assert redis_settings.host == "cache"
        assert redis_settings.port == 6380
        assert redis_settings.database == 2


def test_job_result_defaults() -> None:
    result = JobResult(job_id="job-1", status="processing", created_at="2024-03-15T10:00:00")
    assert result.document is None
    assert result.validation_errors == []
    assert result.needs_review is False


def test_worker_main_applies_settings(monkeypatch: pytest.MonkeyPatch, settings: Settings) -> None:
    for name in ("redis_settings", "max_jobs", "job_timeout"):
        monkeypatch.setattr(WorkerSettings, name, getattr(WorkerSettings, name))
    tuned = settings.model_copy(update={"queue_max_jobs": 2, "metrics_port": None})

    with (
        patch("docengine.queue.worker.get_settings", return_value=tuned),
        patch("docengine.queue.worker.configure_logging") as configure,
        patch("docengine.queue.worker.start_metrics_server", return_value=False) as exporter,
        patch("docengine.queue.worker.run_worker") as run,
    ):
        worker.main()

    configure.assert_called_once_with(tuned)
    exporter.assert_called_once_with(None)
    run.assert_called_once_with(WorkerSettings)
    assert WorkerSettings.max_jobs == 2
    assert WorkerSettings.redis_settings.host == "localhost"  # type: ignore[attr-defined]
