"""
Domain layer for document conversion.
Provides interfaces (gateways), their local adapters and a service that runs
the upload -> PDF -> padded PDF pipeline, so front-ends (HTTP or others) can
use the same core logic.
"""

from .errors import (
    ConversionError,
    InternalError,
    NotFoundError,
    PipelineError,
    StagingError,
    TransformError,
)
from .interfaces import ConverterGateway, PdfTransformGateway, RequestPaths, RetentionPolicy, StorageGateway
from .service import ConversionResult, ConversionService, PipelineState
