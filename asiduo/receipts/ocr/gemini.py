"""Gemini API backend for receipt transcription."""

from __future__ import annotations

from . import OCRBackend, guess_media_type, strip_fences
from .claude import _PROMPT


class GeminiOCR(OCRBackend):
    """Transcribe receipts using Google Gemini's vision capability."""

    def __init__(self, api_key: str = "", model: str = "gemini-2.0-flash") -> None:
        self._api_key = api_key
        self._model = model

    async def recognize_text(self, image: bytes) -> str:
        if not self._api_key:
            raise ValueError(
                "No se configuró la clave de Gemini. "
                "Revisa el archivo de configuración o la variable GEMINI_API_KEY."
            )

        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError(
                "Se requiere google-generativeai: pip install 'asiduo-receipts[gemini]'"
            ) from None

        genai.configure(api_key=self._api_key)
        model = genai.GenerativeModel(self._model)
        response = await model.generate_content_async(
            [{"mime_type": guess_media_type(image), "data": image}, _PROMPT]
        )
        return strip_fences(response.text)
