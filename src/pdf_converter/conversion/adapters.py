import json
import logging
import os
import re
import shutil
import subprocess
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from pypdf import PdfReader, PdfWriter, Transformation

from .errors import ConversionError, NotFoundError, StagingError, TransformError
from .interfaces import ConverterGateway, PdfTransformGateway, RequestPaths, RetentionPolicy, StorageGateway

logger = logging.getLogger(__name__)

CHUNK = 1024 * 1024
_SAFE_EXT = re.compile(r"\.[A-Za-z0-9]{1,16}")


class LocalStorage(StorageGateway):
    """Per-request workspaces under a single root, plus the retention sweep.

    Each request lives in `<root>/<token>/`. Tokens of in-flight requests are
    kept in a registry so the sweep never removes a workspace that is in use.
    """

    def __init__(self, policy: RetentionPolicy, *, default_extension: str = ".xlsx") -> None:
        self._policy = policy
        self._root = policy.root.resolve()
        self._default_ext = default_extension
        self._active: set[str] = set()
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @staticmethod
    def new_token() -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        return f"{stamp}-{uuid.uuid4().hex[:8]}"

    def extension_for(self, original_name: str) -> str:
        ext = Path(original_name or "").suffix
        if not _SAFE_EXT.fullmatch(ext):
            return self._default_ext
        return ext

    def is_active(self, token: str) -> bool:
        with self._lock:
            return token in self._active

    def stage(self, stream: BinaryIO, original_name: str) -> RequestPaths:
        """Write the upload into a fresh workspace and return its paths."""
        ext = self.extension_for(original_name)
        token = self.new_token()
        workspace = self._root / token
        try:
            workspace.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            logger.error("Failed to create workspace %s: %s", workspace, e)
            raise StagingError("Failed to create temporary file") from e

        with self._lock:
            self._active.add(token)
        paths = RequestPaths(token=token, workspace=workspace, input_path=workspace / f"{token}{ext}", extension=ext)
        try:
            paths.output_dir.mkdir()
            with paths.input_path.open("wb") as f_out:
                shutil.copyfileobj(stream, f_out, CHUNK)
        except Exception as e:
            logger.error("Failed to save upload %r: %s", original_name, e)
            self.release(paths)
            raise StagingError("Failed to save uploaded file") from e
        logger.info("Staged %r as %s", original_name, paths.input_path)
        return paths

    def release(self, paths: RequestPaths) -> None:
        """Delete every artifact of the request. Failures are logged only."""
        try:
            if paths.workspace.exists():
                shutil.rmtree(paths.workspace)
        except OSError as e:
            logger.warning("Failed to delete workspace %s: %s", paths.workspace, e)
        finally:
            with self._lock:
                self._active.discard(paths.token)

    def sweep_once(self, now: float | None = None) -> list[Path]:
        """Delete top-level entries older than the retention window."""
        now = time.time() if now is None else now
        max_age = self._policy.max_age.total_seconds()
        removed: list[Path] = []
        if not self._root.exists():
            return removed
        for entry in list(self._root.iterdir()):
            if self.is_active(entry.name):
                continue
            try:
                mtime = entry.stat().st_mtime
            except OSError as e:
                logger.warning("Failed to get file info for %s: %s", entry, e)
                continue
            if now - mtime <= max_age:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as e:
                logger.warning("Failed to delete %s: %s", entry, e)
                continue
            logger.info("Deleted old file: %s", entry)
            removed.append(entry)
        return removed


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class LibreOfficeConverter(ConverterGateway):
    """Runs `soffice --convert-to` with a single-page-per-sheet filter, then plain pdf."""

    def __init__(
        self,
        binary: str = "soffice",
        *,
        render_margin: int = 1320,
        timeout_sec: float | None = 300.0,
        isolated_profile: bool = True,
    ) -> None:
        self._binary = binary
        self._render_margin = render_margin
        self._timeout = timeout_sec
        self._isolated_profile = isolated_profile

    def filter_expression(self) -> str:
        margin = {"type": "long", "value": self._render_margin}
        options = {
            "SinglePageSheets": {"type": "boolean", "value": True},
            "LeftMargin": margin,
            "RightMargin": margin,
            "TopMargin": margin,
            "BottomMargin": margin,
        }
        return "pdf:calc_pdf_Export:" + json.dumps(options, separators=(",", ":"))

    def build_command(self, paths: RequestPaths, target: str) -> list[str]:
        cmd = [self._binary]
        if self._isolated_profile:
            cmd.append(f"-env:UserInstallation={paths.profile_dir.as_uri()}")
        cmd += [
            "--headless",
            "--nodefault",
            "--nolockcheck",
            "--convert-to",
            target,
            str(paths.input_path),
            "--outdir",
            str(paths.output_dir),
        ]
        return cmd

    def convert(self, paths: RequestPaths) -> Path:
        result = self._run(self.build_command(paths, self.filter_expression()))
        if result.returncode != 0:
            logger.warning(
                "Conversion with SinglePageSheets failed (exit %s)\nstdout: %s\nstderr: %s",
                result.returncode, result.stdout, result.stderr,
            )
            logger.info("Trying fallback conversion without filter options")
            result = self._run(self.build_command(paths, "pdf"))
            if result.returncode != 0:
                logger.error(
                    "Fallback conversion failed (exit %s)\nstdout: %s\nstderr: %s",
                    result.returncode, result.stdout, result.stderr,
                )
                raise ConversionError(
                    f"Failed to convert file to PDF: exit status {result.returncode}. stderr: {result.stderr}",
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            logger.info("Fallback conversion succeeded (may have page breaks)")

        logger.debug("LibreOffice stdout: %s", result.stdout)
        if result.stderr:
            logger.debug("LibreOffice stderr: %s", result.stderr)
        return paths.expected_pdf

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        # LibreOffice needs a writable HOME
        env.setdefault("HOME", "/tmp")
        logger.info("Running LibreOffice conversion: %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout, env=env, check=False)
        except subprocess.TimeoutExpired as e:
            stdout, stderr = _as_text(e.stdout), _as_text(e.stderr)
            logger.error("LibreOffice timed out after %s seconds\nstderr: %s", self._timeout, stderr)
            raise ConversionError(
                f"Failed to convert file to PDF: timed out after {self._timeout} seconds. stderr: {stderr}",
                stdout=stdout,
                stderr=stderr,
                timed_out=True,
            ) from e
        except OSError as e:
            logger.error("Failed to start %s: %s", self._binary, e)
            raise ConversionError(f"Failed to convert file to PDF: cannot run {self._binary}: {e}") from e


def locate_output(input_path: Path, outdir: Path, input_ext: str, *, expected: Path | None = None) -> Path:
    """Find the PDF the converter wrote for `input_path`.

    Checks `expected` (when given), then `<stem>.pdf`, then scans `outdir`
    for any other `.pdf` file.
    """
    name = input_path.name
    stem = name[: -len(input_ext)] if input_ext and name.endswith(input_ext) else input_path.stem
    candidates = [p for p in (expected, outdir / f"{stem}.pdf") if p is not None]
    for candidate in candidates:
        if candidate != input_path and candidate.is_file():
            logger.info("PDF file found at: %s", candidate)
            return candidate

    try:
        entries = sorted(outdir.iterdir())
    except OSError as e:
        logger.error("Failed to read output directory %s: %s", outdir, e)
        entries = []
    for entry in entries:
        if entry != input_path and entry.suffix == ".pdf" and entry.is_file():
            logger.info("Found PDF file: %s", entry)
            return entry

    listing = [f"{entry.name} (dir: {entry.is_dir()})" for entry in entries]
    logger.error(
        "PDF file was not created. Expected: %s\nFiles in %s:\n%s",
        candidates[-1], outdir, "\n".join(f"  - {line}" for line in listing),
    )
    raise NotFoundError("PDF conversion completed but file was not found", listing=listing)


def mm_to_points(mm: float) -> float:
    return mm * 72.0 / 25.4


def padded_path_for(pdf_path: Path) -> Path:
    stem = pdf_path.name[:-4] if pdf_path.name.endswith(".pdf") else pdf_path.name
    return pdf_path.with_name(f"{stem}_padded.pdf")


class PypdfPadder(PdfTransformGateway):
    def pad(self, pdf_path: Path, margin_mm: float) -> Path:
        """Place every page, unscaled, on a new page larger by `margin_mm` on each side."""
        try:
            reader = PdfReader(str(pdf_path))
            page_count = len(reader.pages)
        except Exception as e:
            raise TransformError(f"count pages: {e}") from e
        if page_count == 0:
            raise TransformError("pdf has no pages")

        margin = mm_to_points(margin_mm)
        output_path = padded_path_for(pdf_path)
        writer = PdfWriter()
        try:
            for index in range(page_count):
                page = reader.pages[index]
                if page.rotation:
                    page.transfer_rotation_to_content()
                box = page.mediabox
                width, height = float(box.width), float(box.height)
                target = writer.add_blank_page(width=width + 2 * margin, height=height + 2 * margin)
                offset = Transformation().translate(margin - float(box.left), margin - float(box.bottom))
                target.merge_transformed_page(page, offset)
            with output_path.open("wb") as f_out:
                writer.write(f_out)
        except Exception as e:
            output_path.unlink(missing_ok=True)
            raise TransformError(f"write padded pdf: {e}") from e
        return output_path
