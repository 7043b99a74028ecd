from dataclasses import dataclass


class ConversionServiceError(Exception):
    """Base class for failures reported to callers as (code, message)."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"code": self.code, "message": self.message}


class ValidationError(ConversionServiceError):
    code = "validation_error"


class NotFound(ConversionServiceError):
    code = "not_found"


class InvalidTransition(ConversionServiceError):
    code = "invalid_transition"


class StorageError(ConversionServiceError):
    code = "io_error"

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ConversionError(ConversionServiceError):
    """Converter failure. The message is the converter's own, unmodified."""

    code = "conversion_error"


@dataclass(frozen=True)
class FailedItem:
    source: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "reason": self.reason}


class PartialFailure(ConversionServiceError):
    code = "partial_failure"

    def __init__(self, message: str, failures: list[FailedItem]) -> None:
        super().__init__(message)
        self.failures = list(failures)

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["failed"] = [f.to_dict() for f in self.failures]
        return data
