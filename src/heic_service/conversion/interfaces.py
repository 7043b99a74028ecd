from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Protocol

from .errors import ValidationError

SOURCE_EXTENSIONS = (".heic", ".heif")
PUBLIC_PREFIX = "/converted"


class TargetFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"

    @property
    def extension(self) -> str:
        return ".jpg" if self is TargetFormat.JPEG else ".png"

    @property
    def encoder(self) -> str:
        """Pillow format name used when saving."""
        return self.value.upper()

    @classmethod
    def default(cls) -> "TargetFormat":
        return cls.JPEG

    @classmethod
    def parse(cls, value: "str | TargetFormat | None") -> "TargetFormat":
        """Strict parse: empty means default, anything unknown is rejected."""
        if isinstance(value, TargetFormat):
            return value
        raw = (value or "").strip().lower()
        if not raw:
            return cls.default()
        if raw == "jpg":
            return cls.JPEG
        try:
            return cls(raw)
        except ValueError:
            allowed = ", ".join(f.value for f in cls)
            raise ValidationError(f"unsupported target format '{value}' (expected one of: {allowed})")

    @classmethod
    def coerce(cls, value: str | None) -> "TargetFormat":
        """Lenient parse for bulk conversion: unknown values collapse to the default."""
        try:
            return cls.parse(value)
        except ValidationError:
            return cls.default()


def is_source_name(name: str) -> bool:
    return name.lower().endswith(SOURCE_EXTENSIONS)


def output_name(source_name: str, target_format: TargetFormat) -> str:
    """Derive the outbox name for a source.

    A recognised source extension is replaced by the target's canonical
    extension; otherwise the extension is appended to the whole name.
    """
    lowered = source_name.lower()
    for ext in SOURCE_EXTENSIONS:
        if lowered.endswith(ext) and len(source_name) > len(ext):
            return source_name[: -len(ext)] + target_format.extension
    return source_name + target_format.extension


def locator_for(name: str) -> str:
    return f"{PUBLIC_PREFIX}/{name}"


@dataclass(frozen=True)
class SourceFile:
    identifier: str
    name: str
    size_bytes: int
    path: str
    checksum: str


@dataclass(frozen=True)
class Artifact:
    name: str
    path: str
    size_bytes: int

    @property
    def locator(self) -> str:
        return locator_for(self.name)


class ConverterGateway(Protocol):
    def convert(self, source_path: str, target_format: TargetFormat) -> bytes:
        """Decode the source image and re-encode it in the target format.
        This is a blocking call; callers should offload to threads if needed.
        """


class StorageGateway(Protocol):
    def ensure_directories(self) -> None:
        ...

    def persist_source(self, name: str, data: bytes) -> SourceFile:
        ...

    def source(self, name: str) -> SourceFile:
        ...

    def read_source(self, source: SourceFile) -> bytes:
        ...

    def write_artifact(self, output_name: str, data: bytes) -> Artifact:
        ...

    def artifact_path(self, name: str) -> Path:
        ...

    def list_inbox(self) -> Iterator[str]:
        ...

    def list_outbox(self) -> Iterator[str]:
        ...

    def delete_inbox(self, name: str) -> None:
        ...

    def delete_outbox(self, name: str) -> None:
        ...

    def clear_all(self) -> int:
        ...
