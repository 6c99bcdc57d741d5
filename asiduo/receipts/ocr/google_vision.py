"""Google Cloud Vision text detection backend."""

from __future__ import annotations

import asyncio

from ..errors import CollaboratorError
from . import OCRBackend


class GoogleVisionOCR(OCRBackend):
    """Recognize receipt text with Cloud Vision ``text_detection``."""

    def __init__(self, credentials_path: str = "") -> None:
        self._credentials_path = credentials_path
        self._client = None

    def _get_client(self):
        if self._client is not None:
            return self._client

        try:
            from google.cloud import vision
        except ImportError:
            raise ImportError(
                "Se requiere google-cloud-vision: pip install 'asiduo-receipts[vision]'"
            ) from None

        if self._credentials_path:
            self._client = vision.ImageAnnotatorClient.from_service_account_file(
                self._credentials_path
            )
        else:
            self._client = vision.ImageAnnotatorClient()
        return self._client

    def _detect(self, image: bytes) -> str:
        from google.cloud import vision

        client = self._get_client()
        response = client.text_detection(image=vision.Image(content=image))
        if response.error.message:
            raise CollaboratorError(f"Cloud Vision: {response.error.message}")
        annotations = response.text_annotations
        return annotations[0].description if annotations else ""

    async def recognize_text(self, image: bytes) -> str:
        self._get_client()
        return await asyncio.to_thread(self._detect, image)
