"""Client-side view of per-file upload/convert status.

The view is disposable: the server's converted-files listing is the source
of truth and :meth:`SessionView.reconcile` rebuilds the view from it.
"""

import io
import itertools
import zipfile
from collections import Counter
from dataclasses import dataclass, replace


class EntryStatus:
    UPLOADING = "uploading"
    CONVERTED = "converted"
    ERROR = "error"


@dataclass(frozen=True)
class SessionEntry:
    id: str
    name: str
    status: str
    converted_name: str | None = None
    download_url: str | None = None
    message: str | None = None


class SessionView:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._entries: dict[str, SessionEntry] = {}

    def _new_id(self) -> str:
        return f"f{next(self._ids)}"

    def reconcile(self, files: list[dict[str, str]]) -> None:
        """Rebuild from a /converted-files payload, dropping local state."""
        self._entries = {}
        for f in files:
            entry = SessionEntry(
                id=self._new_id(),
                name=f["name"],
                status=EntryStatus.CONVERTED,
                converted_name=f["name"],
                download_url=f.get("downloadUrl"),
            )
            self._entries[entry.id] = entry

    def begin_upload(self, name: str) -> str:
        entry = SessionEntry(id=self._new_id(), name=name, status=EntryStatus.UPLOADING)
        self._entries[entry.id] = entry
        return entry.id

    def record_success(self, entry_id: str, payload: dict[str, str]) -> None:
        self._entries[entry_id] = replace(
            self._get(entry_id),
            status=EntryStatus.CONVERTED,
            converted_name=payload.get("convertedFile"),
            download_url=payload.get("downloadUrl"),
            message=None,
        )

    def record_failure(self, entry_id: str, message: str) -> None:
        self._entries[entry_id] = replace(self._get(entry_id), status=EntryStatus.ERROR, message=message)

    def retry_target(self, entry_id: str) -> str:
        """Mark a failed entry as in flight again and return the upload name to re-convert."""
        entry = self._get(entry_id)
        if entry.status != EntryStatus.ERROR:
            raise ValueError(f"entry {entry_id} is {entry.status}; only failed entries can be retried")
        self._entries[entry_id] = replace(entry, status=EntryStatus.UPLOADING, message=None)
        return entry.name

    def entries(self) -> list[SessionEntry]:
        return list(self._entries.values())

    def stats(self) -> dict[str, int]:
        counts = Counter(e.status for e in self._entries.values())
        return {s: counts.get(s, 0) for s in (EntryStatus.UPLOADING, EntryStatus.CONVERTED, EntryStatus.ERROR)}

    def _get(self, entry_id: str) -> SessionEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise KeyError(f"unknown entry {entry_id}") from None


def build_archive(items: list[tuple[str, bytes]]) -> bytes:
    """Zip converted files for a single "download all" payload."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as zf:
        for name, data in items:
            zf.writestr(name, data)
    return buf.getvalue()
