import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from . import __version__
from .conversion.errors import ConfigurationError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed down."""

    api_token: str
    work_dir: Path
    margin_mm: float = 13.2
    # LibreOffice page margin, in 1/100 mm
    render_margin: int = 1320
    retention: timedelta = timedelta(hours=1)
    sweep_interval_sec: float = 3600.0
    soffice_bin: str = "soffice"
    conversion_timeout_sec: float = 300.0
    default_extension: str = ".xlsx"
    auth_header: str = "x-auth-token"
    service_name: str = "PDF Converter"
    version: str = __version__

    @classmethod
    def from_env(cls) -> "Settings":
        token = os.getenv("API_TOKEN", "")
        if not token:
            raise ConfigurationError("API_TOKEN environment variable is required")
        return cls(
            api_token=token,
            work_dir=Path(os.getenv("WORK_DIR", "./tmp")).resolve(),
            margin_mm=float(os.getenv("PAD_MARGIN_MM", "13.2")),
            render_margin=int(os.getenv("RENDER_MARGIN", "1320")),
            retention=timedelta(seconds=float(os.getenv("RETENTION_SEC", "3600"))),
            sweep_interval_sec=float(os.getenv("SWEEP_INTERVAL_SEC", "3600")),
            soffice_bin=os.getenv("SOFFICE_BIN", "soffice"),
            conversion_timeout_sec=float(os.getenv("CONVERSION_TIMEOUT_SEC", "300")),
            default_extension=os.getenv("DEFAULT_EXTENSION", ".xlsx"),
            version=os.getenv("PDF_CONVERTER_VERSION", __version__),
        )


@dataclass(frozen=True)
class ServerOptions:
    host: str
    port: int
    reload: bool

    @classmethod
    def from_env(cls) -> "ServerOptions":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "5000")),
            reload=_env_bool("RELOAD", "false"),
        )
