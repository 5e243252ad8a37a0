from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, Protocol


@dataclass(frozen=True)
class RetentionPolicy:
    root: Path
    max_age: timedelta


@dataclass(frozen=True)
class RequestPaths:
    """Artifacts of one request; every name derives from `token`."""

    token: str
    workspace: Path
    input_path: Path
    extension: str

    @property
    def output_dir(self) -> Path:
        return self.workspace / "out"

    @property
    def expected_pdf(self) -> Path:
        return self.output_dir / f"{self.token}.pdf"

    @property
    def profile_dir(self) -> Path:
        return self.workspace / "profile"


class StorageGateway(Protocol):
    def stage(self, stream: BinaryIO, original_name: str) -> RequestPaths:
        ...

    def release(self, paths: RequestPaths) -> None:
        ...

    def sweep_once(self) -> list[Path]:
        ...


class ConverterGateway(Protocol):
    def convert(self, paths: RequestPaths) -> Path:
        """Render `paths.input_path` to PDF inside the request workspace.

        Returns the path the converter is expected to have written. This is a
        blocking call; callers should offload to threads if needed.
        """


class PdfTransformGateway(Protocol):
    def pad(self, pdf_path: Path, margin_mm: float) -> Path:
        ...
