"""Tests for receipts config loading."""

import os
import tempfile

from asiduo.receipts.config import ReceiptsConfig, load_config


def _load(toml_content: bytes) -> ReceiptsConfig:
    with tempfile.NamedTemporaryFile(suffix=".toml", delete=False) as f:
        f.write(toml_content)
        f.flush()
        config = load_config(f.name)
    os.unlink(f.name)
    return config


def test_load_config_defaults(monkeypatch):
    """Loading with no path returns all defaults."""
    monkeypatch.delenv("WHATSAPP_API_TOKEN", raising=False)
    config = load_config()
    assert isinstance(config, ReceiptsConfig)
    assert config.database.path == "~/.config/asiduo/receipts.db"
    assert config.ocr.backend == "google_vision"
    assert config.ocr.retries == 3
    assert config.whatsapp.enabled is True
    assert config.whatsapp.api_token == ""
    assert config.queue.sweep_schedule == "*/5 * * * *"
    assert config.queue.max_attempts == 3
    assert config.queue.stale_after == 1800
    assert config.dedup.window_hours == 24
    assert config.archive.backend == "none"
    assert config.webhook.acknowledge is True
    assert config.card.url_template == "https://asiduo.club/{slug}/{phone}"


def test_load_config_nonexistent_file():
    """Loading a nonexistent file returns defaults."""
    config = load_config("/nonexistent/path.toml")
    assert config.ocr.backend == "google_vision"


def test_load_config_from_toml():
    """Loading a valid TOML file populates config."""
    config = _load(b"""\
[database]
path = "/var/asiduo/receipts.db"

[ocr]
backend = "gemini"
retries = 5

[ocr.gemini]
api_key = "test-key-123"
model = "gemini-pro"

[queue]
batch_size = 10
max_attempts = 4

[dedup]
window_hours = 12

[archive]
backend = "local"
directory = "/var/asiduo/imagenes"
""")

    assert config.database.path == "/var/asiduo/receipts.db"
    assert config.ocr.backend == "gemini"
    assert config.ocr.retries == 5
    assert config.ocr.gemini.api_key == "test-key-123"
    assert config.ocr.gemini.model == "gemini-pro"
    assert config.queue.batch_size == 10
    assert config.queue.max_attempts == 4
    assert config.queue.backoff_base == 60
    assert config.dedup.window_hours == 12
    assert config.archive.backend == "local"


def test_load_config_env_override(monkeypatch):
    """Environment variables fill empty secrets."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-anthropic-key")
    monkeypatch.setenv("GEMINI_API_KEY", "env-gemini-key")
    monkeypatch.setenv("WHATSAPP_API_TOKEN", "env-token")
    monkeypatch.setenv("WHATSAPP_PHONE_NUMBER_ID", "12345")
    monkeypatch.setenv("WHATSAPP_APP_SECRET", "env-secret")

    config = load_config()
    assert config.ocr.claude.api_key == "env-anthropic-key"
    assert config.ocr.gemini.api_key == "env-gemini-key"
    assert config.whatsapp.api_token == "env-token"
    assert config.whatsapp.phone_number_id == "12345"
    assert config.whatsapp.app_secret == "env-secret"


def test_load_config_file_key_takes_precedence(monkeypatch):
    """Config file secrets take precedence over env vars."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
    monkeypatch.setenv("WHATSAPP_VERIFY_TOKEN", "env-verify")

    config = _load(b"""\
[ocr.claude]
api_key = "file-key"

[whatsapp]
verify_token = "file-verify"
""")
    assert config.ocr.claude.api_key == "file-key"
    assert config.whatsapp.verify_token == "file-verify"


def test_load_config_extraction_overrides():
    """Per-merchant extraction patterns are loaded as-is."""
    config = _load(b"""\
[extraction]
mismatch_tolerance = 0.5

[extraction.overrides.el-trigal]
amount = ['MONTO\\s+FINAL\\s+(\\S+)']
""")
    assert config.extraction.mismatch_tolerance == 0.5
    assert config.extraction.overrides["el-trigal"]["amount"] == [r"MONTO\s+FINAL\s+(\S+)"]


def test_load_config_ignores_unknown_keys():
    config = _load(b"""\
[webhook]
port = 9000
unknown = "x"
""")
    assert config.webhook.port == 9000
