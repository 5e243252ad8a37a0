from datetime import timedelta

import pytest

from pdf_converter.config import ServerOptions, Settings
from pdf_converter.conversion.errors import ConfigurationError


def test_api_token_is_required(monkeypatch):
    monkeypatch.delenv("API_TOKEN", raising=False)
    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("API_TOKEN", "secret")
    monkeypatch.chdir(tmp_path)
    for name in ("WORK_DIR", "PAD_MARGIN_MM", "RETENTION_SEC", "SOFFICE_BIN"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.api_token == "secret"
    assert settings.work_dir == (tmp_path / "tmp").resolve()
    assert settings.margin_mm == 13.2
    assert settings.render_margin == 1320
    assert settings.retention == timedelta(hours=1)
    assert settings.default_extension == ".xlsx"


def test_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("API_TOKEN", "secret")
    monkeypatch.setenv("WORK_DIR", str(tmp_path / "scratch"))
    monkeypatch.setenv("PAD_MARGIN_MM", "5")
    monkeypatch.setenv("RETENTION_SEC", "60")
    monkeypatch.setenv("CONVERSION_TIMEOUT_SEC", "12")

    settings = Settings.from_env()

    assert settings.work_dir == tmp_path / "scratch"
    assert settings.margin_mm == 5.0
    assert settings.retention == timedelta(seconds=60)
    assert settings.conversion_timeout_sec == 12.0


def test_server_options(monkeypatch):
    monkeypatch.setenv("PORT", "8081")
    monkeypatch.delenv("RELOAD", raising=False)
    options = ServerOptions.from_env()
    assert options.port == 8081
    assert options.reload is False
