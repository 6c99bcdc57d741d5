"""TOML configuration loader for the receipts service."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib
    except ImportError:
        tomllib = None  # type: ignore[assignment]


@dataclass
class DatabaseConfig:
    path: str = "~/.config/asiduo/receipts.db"


@dataclass
class GoogleVisionConfig:
    credentials_path: str = ""


@dataclass
class ClaudeOCRConfig:
    api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"


@dataclass
class GeminiOCRConfig:
    api_key: str = ""
    model: str = "gemini-2.0-flash"


@dataclass
class OCRConfig:
    backend: str = "google_vision"
    retries: int = 3
    retry_wait: float = 1.0
    google_vision: GoogleVisionConfig = field(default_factory=GoogleVisionConfig)
    claude: ClaudeOCRConfig = field(default_factory=ClaudeOCRConfig)
    gemini: GeminiOCRConfig = field(default_factory=GeminiOCRConfig)


@dataclass
class WhatsAppConfig:
    enabled: bool = True
    api_token: str = ""
    phone_number_id: str = ""
    app_secret: str = ""
    verify_token: str = ""
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"
    timeout: float = 30.0


@dataclass
class QueueConfig:
    sweep_schedule: str = "*/5 * * * *"
    batch_size: int = 5
    item_timeout: float = 540.0
    max_attempts: int = 3
    backoff_base: float = 60.0
    backoff_max: float = 3600.0
    stale_after: float = 1800.0
    outbox_schedule: str = "*/10 * * * *"
    recovery_schedule: str = "*/15 * * * *"


@dataclass
class DedupConfig:
    window_hours: float = 24.0


@dataclass
class ExtractionConfig:
    mismatch_tolerance: float = 0.10
    name_scan_lines: int = 5
    # merchant slug -> {field: [regex, ...]}
    overrides: dict[str, dict[str, list[str]]] = field(default_factory=dict)


@dataclass
class ArchiveConfig:
    backend: str = "none"  # none | local | gdrive
    directory: str = "~/.config/asiduo/receipts"
    credentials_path: str = "~/.config/asiduo/gdrive_credentials.json"
    token_path: str = "~/.config/asiduo/gdrive_token.json"
    folder_id: str = ""


@dataclass
class WebhookConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    acknowledge: bool = True


@dataclass
class CardConfig:
    url_template: str = "https://asiduo.club/{slug}/{phone}"


@dataclass
class ReceiptsConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ocr: OCRConfig = field(default_factory=OCRConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    card: CardConfig = field(default_factory=CardConfig)


def _section(cls, raw: dict):
    """Build a flat config dataclass, ignoring unknown keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_config(path: str | Path | None = None) -> ReceiptsConfig:
    """Load configuration from a TOML file.

    Falls back to defaults if no path is given or the file doesn't exist.
    Secrets can be supplied via environment variables.
    """
    raw: dict = {}

    if path is not None:
        p = Path(path)
        if p.exists():
            if tomllib is None:
                raise ImportError(
                    "tomli is required on Python < 3.11: pip install tomli"
                )
            with open(p, "rb") as f:
                raw = tomllib.load(f)

    ocr = dict(raw.get("ocr", {}))
    gv_cfg = ocr.pop("google_vision", {})
    claude_cfg = ocr.pop("claude", {})
    gemini_cfg = ocr.pop("gemini", {})
    wa = dict(raw.get("whatsapp", {}))

    # Resolve secrets: config file → environment variable
    claude_cfg = {
        **claude_cfg,
        "api_key": claude_cfg.get("api_key", "") or os.environ.get("ANTHROPIC_API_KEY", ""),
    }
    gemini_cfg = {
        **gemini_cfg,
        "api_key": gemini_cfg.get("api_key", "") or os.environ.get("GEMINI_API_KEY", ""),
    }
    gv_cfg = {
        **gv_cfg,
        "credentials_path": gv_cfg.get("credentials_path", "")
        or os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", ""),
    }
    for key, env in (
        ("api_token", "WHATSAPP_API_TOKEN"),
        ("phone_number_id", "WHATSAPP_PHONE_NUMBER_ID"),
        ("app_secret", "WHATSAPP_APP_SECRET"),
        ("verify_token", "WHATSAPP_VERIFY_TOKEN"),
    ):
        wa[key] = wa.get(key, "") or os.environ.get(env, "")

    ext = raw.get("extraction", {})

    return ReceiptsConfig(
        database=_section(DatabaseConfig, raw.get("database", {})),
        ocr=OCRConfig(
            backend=ocr.get("backend", "google_vision"),
            retries=ocr.get("retries", 3),
            retry_wait=ocr.get("retry_wait", 1.0),
            google_vision=_section(GoogleVisionConfig, gv_cfg),
            claude=_section(ClaudeOCRConfig, claude_cfg),
            gemini=_section(GeminiOCRConfig, gemini_cfg),
        ),
        whatsapp=_section(WhatsAppConfig, wa),
        queue=_section(QueueConfig, raw.get("queue", {})),
        dedup=_section(DedupConfig, raw.get("dedup", {})),
        extraction=ExtractionConfig(
            mismatch_tolerance=ext.get("mismatch_tolerance", 0.10),
            name_scan_lines=ext.get("name_scan_lines", 5),
            overrides=ext.get("overrides", {}),
        ),
        archive=_section(ArchiveConfig, raw.get("archive", {})),
        webhook=_section(WebhookConfig, raw.get("webhook", {})),
        card=_section(CardConfig, raw.get("card", {})),
    )
