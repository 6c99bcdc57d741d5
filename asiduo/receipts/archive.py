"""Receipt image archive: local directory or Google Drive upload."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from .ocr import guess_media_type

if TYPE_CHECKING:
    from .config import ReceiptsConfig

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/jpeg": ".jpg",
}


def image_filename(merchant_slug: str, purchase_id: str, image: bytes) -> str:
    safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in purchase_id)
    return f"{merchant_slug}_{safe_id}{_EXTENSIONS[guess_media_type(image)]}"


class ReceiptArchive(ABC):
    """Abstract base for storing receipt images after a purchase is committed."""

    @abstractmethod
    async def store(self, image: bytes, filename: str) -> str:
        """Store the image and return a reference to it."""
        ...


class LocalArchive(ReceiptArchive):
    """Write images into a directory; the reference is the file path."""

    def __init__(self, directory: str | Path = "~/.config/asiduo/receipts") -> None:
        self._directory = Path(directory).expanduser()

    async def store(self, image: bytes, filename: str) -> str:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._directory / filename
        await asyncio.to_thread(path.write_bytes, image)
        return str(path)


class GoogleDriveArchive(ReceiptArchive):
    """Upload images to Google Drive using OAuth 2.0.

    On first use, opens a browser for Google account authorization.
    The token is saved for subsequent use. References are ``gdrive:<file id>``.
    """

    SCOPES = ["https://www.googleapis.com/auth/drive.file"]

    def __init__(
        self,
        credentials_path: str | Path = "~/.config/asiduo/gdrive_credentials.json",
        token_path: str | Path = "~/.config/asiduo/gdrive_token.json",
        folder_id: str = "",
    ) -> None:
        self._credentials_path = Path(credentials_path).expanduser()
        self._token_path = Path(token_path).expanduser()
        self._folder_id = folder_id
        self._service = None

    def _get_service(self):
        """Build and return the Drive API service, authenticating if needed."""
        if self._service is not None:
            return self._service

        try:
            from google.auth.transport.requests import Request
            from google.oauth2.credentials import Credentials
            from google_auth_oauthlib.flow import InstalledAppFlow
            from googleapiclient.discovery import build
        except ImportError:
            raise ImportError(
                "Faltan paquetes para Google Drive:\n"
                "  pip install 'asiduo-receipts[gdrive]'"
            ) from None

        creds = None
        if self._token_path.exists():
            creds = Credentials.from_authorized_user_file(
                str(self._token_path), self.SCOPES
            )

        if creds is None or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
            else:
                if not self._credentials_path.exists():
                    raise FileNotFoundError(
                        f"No se encontró el archivo de credenciales OAuth: "
                        f"{self._credentials_path}"
                    )
                flow = InstalledAppFlow.from_client_secrets_file(
                    str(self._credentials_path), self.SCOPES
                )
                creds = flow.run_local_server(port=0)

            self._token_path.parent.mkdir(parents=True, exist_ok=True)
            self._token_path.write_text(creds.to_json())

        self._service = build("drive", "v3", credentials=creds)
        return self._service

    def _upload(self, image: bytes, filename: str) -> str:
        from googleapiclient.http import MediaInMemoryUpload

        service = self._get_service()
        metadata: dict = {"name": filename}
        if self._folder_id:
            metadata["parents"] = [self._folder_id]

        media = MediaInMemoryUpload(image, mimetype=guess_media_type(image), resumable=True)
        result = (
            service.files()
            .create(body=metadata, media_body=media, fields="id")
            .execute()
        )
        return result["id"]

    async def store(self, image: bytes, filename: str) -> str:
        file_id = await asyncio.to_thread(self._upload, image, filename)
        logger.info("Imagen subida a Google Drive: %s (%s)", filename, file_id)
        return f"gdrive:{file_id}"


def create_archive(config: ReceiptsConfig) -> ReceiptArchive | None:
    """Create the configured archive, or None when archiving is off."""
    match config.archive.backend:
        case "none" | "":
            return None
        case "local":
            return LocalArchive(config.archive.directory)
        case "gdrive":
            return GoogleDriveArchive(
                credentials_path=config.archive.credentials_path,
                token_path=config.archive.token_path,
                folder_id=config.archive.folder_id,
            )
        case other:
            raise ValueError(
                f"Archivo de imágenes desconocido: {other!r}  (elige none / local / gdrive)"
            )
