from dataclasses import dataclass
from pathlib import Path

from .interfaces import StorageGateway, locator_for


@dataclass(frozen=True)
class ArtifactEntry:
    name: str
    locator: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "downloadUrl": self.locator}


@dataclass(frozen=True)
class ClearResult:
    removed: int


class ArtifactCatalog:
    """Read-only view over the outbox.

    The outbox listing is the catalog, so rebuilding after a restart is just
    listing the directory again. The only write is the bulk clear, delegated
    to storage.
    """

    def __init__(self, storage: StorageGateway) -> None:
        self._storage = storage

    def list_artifacts(self) -> list[ArtifactEntry]:
        return [ArtifactEntry(name=n, locator=locator_for(n)) for n in self._storage.list_outbox()]

    def locate(self, name: str) -> Path:
        return self._storage.artifact_path(name)

    def clear(self) -> ClearResult:
        return ClearResult(removed=self._storage.clear_all())
