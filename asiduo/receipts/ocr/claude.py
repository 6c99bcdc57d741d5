"""Claude API backend for receipt transcription."""

from __future__ import annotations

import base64

from . import OCRBackend, guess_media_type, strip_fences

_PROMPT = """\
Esta imagen es un comprobante de pago peruano (boleta, factura o ticket).
Transcribe todo el texto exactamente como aparece, línea por línea,
sin corregir ni resumir. Responde solo con el texto transcrito.
Si la imagen no contiene texto legible, responde con una línea vacía.
"""


class ClaudeOCR(OCRBackend):
    """Transcribe receipts using Claude's vision capability."""

    def __init__(self, api_key: str = "", model: str = "claude-sonnet-4-5-20250929") -> None:
        self._api_key = api_key
        self._model = model

    async def recognize_text(self, image: bytes) -> str:
        if not self._api_key:
            raise ValueError(
                "No se configuró la clave de Anthropic. "
                "Revisa el archivo de configuración o la variable ANTHROPIC_API_KEY."
            )

        try:
            import anthropic
        except ImportError:
            raise ImportError(
                "Se requiere anthropic: pip install 'asiduo-receipts[claude]'"
            ) from None

        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": guess_media_type(image),
                    "data": base64.standard_b64encode(image).decode(),
                },
            },
            {"type": "text", "text": _PROMPT},
        ]

        client = anthropic.AsyncAnthropic(api_key=self._api_key)
        response = await client.messages.create(
            model=self._model,
            max_tokens=4096,
            messages=[{"role": "user", "content": content}],
        )
        return strip_fences(response.content[0].text)
