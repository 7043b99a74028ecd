import hashlib
import io
import itertools
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterator

from ..logger import get_logger
from .errors import ConversionError, FailedItem, NotFound, PartialFailure, StorageError, ValidationError
from .interfaces import Artifact, ConverterGateway, SourceFile, StorageGateway, TargetFormat

log = get_logger("storage")

_TMP_PREFIX = ".partial-"


def _safe_name(name: str) -> str:
    if not name or name in {".", ".."} or "/" in name or "\\" in name or "\x00" in name:
        raise ValidationError(f"invalid file name '{name}'")
    return name


class LocalStorage(StorageGateway):
    """Inbox/outbox pair on the local filesystem.

    Entries are keyed by bare file name: the inbox by original upload name,
    the outbox by derived output name. The directory layout is the catalog.
    """

    def __init__(self, uploads_dir: str, converted_dir: str) -> None:
        self._inbox = Path(uploads_dir).resolve()
        self._outbox = Path(converted_dir).resolve()
        self._seq = itertools.count(1)
        self._seq_lock = threading.Lock()

    @property
    def inbox(self) -> Path:
        return self._inbox

    @property
    def outbox(self) -> Path:
        return self._outbox

    def ensure_directories(self) -> None:
        for d in (self._inbox, self._outbox):
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"cannot create directory {d}: {e}", cause=e) from e

    def _next_identifier(self, name: str) -> str:
        with self._seq_lock:
            return f"{next(self._seq)}:{name}"

    def persist_source(self, name: str, data: bytes) -> SourceFile:
        path = self._inbox / _safe_name(name)
        self.ensure_directories()
        # Same name overwrites: latest upload wins.
        self._atomic_write(path, data)
        log.info("stored upload %s (%d bytes)", name, len(data))
        return SourceFile(
            identifier=self._next_identifier(name),
            name=name,
            size_bytes=len(data),
            path=str(path),
            checksum=hashlib.sha256(data).hexdigest(),
        )

    def source(self, name: str) -> SourceFile:
        path = self._inbox / _safe_name(name)
        if not path.is_file():
            raise NotFound(f"upload '{name}' not found")
        sha256 = hashlib.sha256()
        size_bytes = 0
        try:
            with path.open("rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    sha256.update(chunk)
                    size_bytes += len(chunk)
        except OSError as e:
            raise StorageError(f"cannot read {path}: {e}", cause=e) from e
        return SourceFile(
            identifier=self._next_identifier(name),
            name=name,
            size_bytes=size_bytes,
            path=str(path),
            checksum=sha256.hexdigest(),
        )

    def read_source(self, source: SourceFile) -> bytes:
        path = Path(source.path)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"upload '{source.name}' not found") from None
        except OSError as e:
            raise StorageError(f"cannot read {path}: {e}", cause=e) from e

    def write_artifact(self, output_name: str, data: bytes) -> Artifact:
        path = self._outbox / _safe_name(output_name)
        self.ensure_directories()
        self._atomic_write(path, data)
        return Artifact(name=output_name, path=str(path), size_bytes=len(data))

    def artifact_path(self, name: str) -> Path:
        path = self._outbox / _safe_name(name)
        if not path.is_file():
            raise NotFound(f"converted file '{name}' not found")
        return path

    def list_inbox(self) -> Iterator[str]:
        return self._listing(self._inbox)

    def list_outbox(self) -> Iterator[str]:
        return self._listing(self._outbox)

    def delete_inbox(self, name: str) -> None:
        self._delete(self._inbox / _safe_name(name))

    def delete_outbox(self, name: str) -> None:
        self._delete(self._outbox / _safe_name(name))

    def clear_all(self) -> int:
        removed = 0
        failures: list[FailedItem] = []
        for d in (self._inbox, self._outbox):
            # Temp files belong to in-flight writers and are left alone.
            for name in self._listing(d):
                try:
                    self._delete(d / name)
                    removed += 1
                except StorageError as e:
                    failures.append(FailedItem(source=f"{d.name}/{name}", reason=str(e.cause or e)))
        if failures:
            log.warning("clear removed %d files, %d failed", removed, len(failures))
            raise PartialFailure(f"{len(failures)} file(s) could not be deleted", failures)
        log.info("clear removed %d files", removed)
        return removed

    def remove_stale_partials(self) -> int:
        """Delete temp files left behind by writers that died mid-write.

        Only safe before any writer runs, i.e. at startup.
        """
        removed = 0
        for d in (self._inbox, self._outbox):
            for name in self._listing(d, include_partial=True):
                if name.startswith(_TMP_PREFIX):
                    self._delete(d / name)
                    removed += 1
        if removed:
            log.info("removed %d stale partial file(s)", removed)
        return removed

    @staticmethod
    def _listing(directory: Path, include_partial: bool = False) -> Iterator[str]:
        # Snapshot now; iteration happens lazily over the fixed list.
        try:
            names = sorted(
                p.name
                for p in directory.iterdir()
                if p.is_file() and (include_partial or not p.name.startswith(_TMP_PREFIX))
            )
        except FileNotFoundError:
            names = []
        except OSError as e:
            raise StorageError(f"cannot list {directory}: {e}", cause=e) from e
        return iter(names)

    @staticmethod
    def _delete(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"cannot delete {path}: {e}", cause=e) from e

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=str(path.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise StorageError(f"cannot write {path}: {e}", cause=e) from e


class PillowHeifConverter(ConverterGateway):
    def __init__(self, jpeg_quality: int = 90) -> None:
        self._jpeg_quality = jpeg_quality

    def convert(self, source_path: str, target_format: TargetFormat) -> bytes:
        from PIL import Image
        from pillow_heif import register_heif_opener

        register_heif_opener()
        try:
            with Image.open(source_path) as img:
                out = img
                save_kwargs: dict[str, object] = {}
                if target_format is TargetFormat.JPEG:
                    # JPEG has no alpha channel
                    if img.mode != "RGB":
                        out = img.convert("RGB")
                    save_kwargs["quality"] = self._jpeg_quality
                exif = img.info.get("exif")
                if exif:
                    save_kwargs["exif"] = exif
                buf = io.BytesIO()
                out.save(buf, format=target_format.encoder, **save_kwargs)
                return buf.getvalue()
        except Exception as e:
            raise ConversionError(str(e)) from e
