class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing."""


class PipelineError(Exception):
    """Base for failures of a single conversion request.

    `detail` is the plain-text body sent to the client.
    """

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class StagingError(PipelineError):
    pass


class ConversionError(PipelineError):
    def __init__(self, detail: str, *, stdout: str = "", stderr: str = "", timed_out: bool = False) -> None:
        super().__init__(detail)
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out


class NotFoundError(PipelineError):
    def __init__(self, detail: str, *, listing: list[str] | None = None) -> None:
        super().__init__(detail)
        self.listing = listing or []


class TransformError(PipelineError):
    """Padding failed; the orchestrator serves the unpadded PDF instead."""


class InternalError(PipelineError):
    pass
