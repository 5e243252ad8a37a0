import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from .adapters import locate_output
from .errors import InternalError, PipelineError, TransformError
from .interfaces import ConverterGateway, PdfTransformGateway, RequestPaths, StorageGateway

logger = logging.getLogger(__name__)


class PipelineState:
    RECEIVED = "received"
    STAGED = "staged"
    CONVERTED = "converted"
    LOCATED = "located"
    PADDED = "padded"
    STREAMED = "streamed"
    CLEANED = "cleaned"
    FAILED = "failed"


@dataclass
class ConversionResult:
    paths: RequestPaths
    pdf_path: Path
    padded: bool = False
    states: list[str] = field(default_factory=list)

    @property
    def state(self) -> str:
        return self.states[-1]


class ConversionService:
    """Core domain service running the upload -> PDF pipeline.

    This service is framework-agnostic. `convert_upload` is blocking and is
    meant to be offloaded to a thread by the caller; `start`/`stop` manage the
    background retention sweep on the running event loop.
    """

    def __init__(
        self,
        storage: StorageGateway,
        converter: ConverterGateway,
        padder: PdfTransformGateway,
        *,
        margin_mm: float = 13.2,
        sweep_interval_sec: float = 3600.0,
    ) -> None:
        self._storage = storage
        self._converter = converter
        self._padder = padder
        self._margin_mm = margin_mm
        self._sweep_interval = sweep_interval_sec
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        self._tasks.append(asyncio.create_task(self._sweep_loop()))

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def convert_upload(self, stream: BinaryIO, filename: str) -> ConversionResult:
        """Stage, convert, locate and pad one upload.

        On any unrecoverable failure the request workspace is released before
        the error propagates. On success the caller owns the result and must
        hand it back to `cleanup` once the response has been sent.
        """
        states = [PipelineState.RECEIVED]
        paths = self._storage.stage(stream, filename)
        states.append(PipelineState.STAGED)
        try:
            expected = self._converter.convert(paths)
            states.append(PipelineState.CONVERTED)
            pdf_path = locate_output(paths.input_path, paths.output_dir, paths.extension, expected=expected)
            states.append(PipelineState.LOCATED)
        except PipelineError as e:
            logger.error("Conversion of %r failed at %s: %s", filename, states[-1], e.detail)
            self._storage.release(paths)
            raise
        except Exception as e:
            logger.exception("Unexpected failure converting %r", filename)
            self._storage.release(paths)
            raise InternalError(f"Internal error during conversion: {e}") from e

        result = ConversionResult(paths=paths, pdf_path=pdf_path, states=states)
        try:
            padded_path = self._padder.pad(pdf_path, self._margin_mm)
        except TransformError as e:
            logger.warning("Failed to add padding to PDF, serving unpadded result: %s", e.detail)
            return result
        except Exception:
            logger.exception("Unexpected padding failure, serving unpadded result")
            return result

        try:
            pdf_path.unlink()
        except OSError as e:
            logger.warning("Failed to delete intermediate PDF %s: %s", pdf_path, e)
        result.pdf_path = padded_path
        result.padded = True
        states.append(PipelineState.PADDED)
        return result

    def cleanup(self, result: ConversionResult, *, streamed: bool = True) -> None:
        if result.state == PipelineState.CLEANED:
            return
        if streamed:
            result.states.append(PipelineState.STREAMED)
        self._storage.release(result.paths)
        result.states.append(PipelineState.CLEANED)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                removed = await asyncio.to_thread(self._storage.sweep_once)
            except Exception:
                logger.exception("Retention sweep pass failed")
                continue
            if removed:
                logger.info("Retention sweep removed %d entries", len(removed))
