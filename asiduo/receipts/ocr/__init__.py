"""OCR backend base class, retry wrapper, and factory."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ..errors import CollaboratorError

if TYPE_CHECKING:
    from ..config import ReceiptsConfig

logger = logging.getLogger(__name__)


def guess_media_type(data: bytes) -> str:
    """Guess an image MIME type from its magic bytes (JPEG by default)."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:4] in (b"GIF8",):
        return "image/gif"
    return "image/jpeg"


def strip_fences(text: str) -> str:
    """Remove markdown code fences a model may wrap its answer in."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned.strip()


class OCRBackend(ABC):
    """Abstract base for receipt text recognition."""

    @abstractmethod
    async def recognize_text(self, image: bytes) -> str:
        """Return all text found in the image, or "" when there is none."""
        ...


class RetryingOCR(OCRBackend):
    """Retry a backend on transient failures, then raise CollaboratorError.

    Configuration errors (ValueError, ImportError) are not retried.
    """

    def __init__(self, backend: OCRBackend, attempts: int = 3, wait: float = 1.0) -> None:
        self._backend = backend
        self._attempts = attempts
        self._wait = wait

    async def recognize_text(self, image: bytes) -> str:
        text = ""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_not_exception_type((ValueError, ImportError)),
                stop=stop_after_attempt(self._attempts),
                wait=wait_fixed(self._wait),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    text = await self._backend.recognize_text(image)
        except (ValueError, ImportError):
            raise
        except Exception as exc:
            raise CollaboratorError(f"OCR falló tras {self._attempts} intentos: {exc}") from exc
        return text


def create_backend(config: ReceiptsConfig) -> OCRBackend:
    """Create an OCR backend based on configuration, wrapped in retries."""
    backend_name = config.ocr.backend

    match backend_name:
        case "google_vision":
            from .google_vision import GoogleVisionOCR

            backend: OCRBackend = GoogleVisionOCR(
                credentials_path=config.ocr.google_vision.credentials_path,
            )
        case "claude":
            from .claude import ClaudeOCR

            backend = ClaudeOCR(
                api_key=config.ocr.claude.api_key,
                model=config.ocr.claude.model,
            )
        case "gemini":
            from .gemini import GeminiOCR

            backend = GeminiOCR(
                api_key=config.ocr.gemini.api_key,
                model=config.ocr.gemini.model,
            )
        case _:
            raise ValueError(
                f"Backend de OCR desconocido: {backend_name!r}  "
                f"(elige google_vision / claude / gemini)"
            )

    return RetryingOCR(backend, attempts=config.ocr.retries, wait=config.ocr.retry_wait)
