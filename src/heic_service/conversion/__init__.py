"""
Domain layer for HEIC conversion.
Provides interfaces (gateways), storage and converter adapters, the artifact
catalog, and a service orchestrating conversion jobs so front-ends (HTTP or
others) can use the same core logic.
"""

from .catalog import ArtifactCatalog, ArtifactEntry, ClearResult
from .errors import (
    ConversionError,
    ConversionServiceError,
    FailedItem,
    InvalidTransition,
    NotFound,
    PartialFailure,
    StorageError,
    ValidationError,
)
from .interfaces import (
    Artifact,
    ConverterGateway,
    SourceFile,
    StorageGateway,
    TargetFormat,
    is_source_name,
    output_name,
)
from .service import BatchResult, ConversionJob, ConversionService, JobStatus
