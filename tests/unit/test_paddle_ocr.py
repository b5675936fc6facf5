"""Unit tests for the PaddleOCR service."""

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from docengine.ocr.factory import create_ocr_service
from docengine.ocr.paddle_service import PaddleOCRService, lines_from_boxes
from docengine.shared.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(ocr_provider="paddleocr", ocr_language="por")


@pytest.fixture
def image(tmp_path: Path) -> Path:
    path = tmp_path / "fatura.jpg"
    path.write_bytes(b"jpeg")
    return path


class TestPaddleOCRService:
    """Test PaddleOCRService class."""

    def test_extract_text_file_not_found(self, settings: Settings) -> None:
        """Should return error for non-existent file."""
        service = PaddleOCRService(settings)
        result = service.extract_text(Path("/nonexistent/image.jpg"))
        assert result.success is False
        assert "not found" in str(result.error).lower()

    def test_extract_text_success_with_mock(self, settings: Settings, image: Path) -> None:
        """Recognized lines are joined and their scores averaged."""
        service = PaddleOCRService(settings)
        mock_ocr = MagicMock()
        mock_ocr.ocr.return_value = [
            {"rec_texts": ["FATURA FT 2024/1", "TOTAL: 30,75"], "rec_scores": [0.95, 0.98]}
        ]

        with patch.object(service, "_get_ocr", return_value=mock_ocr):
            result = service.extract_text(image)

        assert result.success is True
        assert result.text == "FATURA FT 2024/1\nTOTAL: 30,75"
        assert result.confidence == pytest.approx(0.965)
        mock_ocr.ocr.assert_called_once_with(str(image))

    def test_extract_text_empty_result(self, settings: Settings, image: Path) -> None:
        """Should handle empty OCR result gracefully."""
        service = PaddleOCRService(settings)
        mock_ocr = MagicMock()
        mock_ocr.ocr.return_value = [None]

        with patch.object(service, "_get_ocr", return_value=mock_ocr):
            result = service.extract_text(image)

        assert result.success is True
        assert result.text == ""

    def test_engine_errors_become_failures(self, settings: Settings, image: Path) -> None:
        service = PaddleOCRService(settings)

        with patch.object(service, "_get_ocr", side_effect=ImportError("paddleocr missing")):
            result = service.extract_text(image)

        assert result.success is False
        assert "paddleocr missing" in str(result.error)

    def test_lazy_loading(self, settings: Settings) -> None:
        """Should not load model until first extraction."""
        assert PaddleOCRService(settings)._ocr is None

    def test_environment_configured(self, settings: Settings) -> None:
        """Should set DISABLE_MODEL_SOURCE_CHECK environment variable."""
        PaddleOCRService(settings)
        assert os.environ.get("DISABLE_MODEL_SOURCE_CHECK") is not None


def test_invalid_provider_raises_error() -> None:
    """Should raise ValueError for unknown provider."""
    settings = Settings()
    object.__setattr__(settings, "ocr_provider", "invalid")

    with pytest.raises(ValueError, match="Unknown OCR provider"):
        create_ocr_service(settings)


def test_default_provider_is_paddleocr() -> None:
    assert Settings(_env_file=None).ocr_provider == "paddleocr"


def test_boxes_regrouped_into_rows() -> None:
    texts = ["1,50", "Arroz Agulha", "10", "TOTAL:", "15,00"]
    boxes = [
        [300.0, 102.0, 340.0, 118.0],
        [10.0, 100.0, 120.0, 120.0],
        [200.0, 101.0, 220.0, 119.0],
        [10.0, 200.0, 60.0, 220.0],
        [300.0, 202.0, 340.0, 218.0],
    ]

    assert lines_from_boxes(texts, boxes) == "Arroz Agulha 10 1,50\nTOTAL: 15,00"


def test_boxes_missing_keeps_engine_order() -> None:
    assert lines_from_boxes(["b", " ", "a"], None) == "b\na"


def test_numpy_style_boxes_are_used(settings: Settings, image: Path) -> None:
    service = PaddleOCRService(settings)
    boxes = MagicMock()
    boxes.tolist.return_value = [[50.0, 0.0, 90.0, 10.0], [0.0, 1.0, 40.0, 11.0]]
    mock_ocr = MagicMock()
    mock_ocr.ocr.return_value = [
        {"rec_texts": ["30,75", "TOTAL:"], "rec_scores": [0.9, 0.8], "rec_boxes": boxes}
    ]

    with patch.object(service, "_get_ocr", return_value=mock_ocr):
        result = service.extract_text(image)

    assert result.text == "TOTAL: 30,75"
