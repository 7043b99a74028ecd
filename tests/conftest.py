"""Test configuration and fixtures."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from heic_service import webapi
from heic_service.conversion import ConversionError, ConversionService, TargetFormat
from heic_service.conversion.adapters import LocalStorage


class FakeConverter:
    """Stands in for the image decoder: output is a tagged copy of the input."""

    def __init__(self) -> None:
        self.fail_on: dict[str, str] = {}
        self.calls: list[tuple[str, TargetFormat]] = []

    def convert(self, source_path: str, target_format: TargetFormat) -> bytes:
        self.calls.append((source_path, target_format))
        name = Path(source_path).name
        if name in self.fail_on:
            raise ConversionError(self.fail_on[name])
        return target_format.value.encode("ascii") + b":" + Path(source_path).read_bytes()


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    s = LocalStorage(str(tmp_path / "uploads"), str(tmp_path / "converted"))
    s.ensure_directories()
    return s


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def service(storage: LocalStorage, converter: FakeConverter) -> ConversionService:
    return ConversionService(storage=storage, converter=converter, workers=2)


@pytest.fixture
def client(service: ConversionService):
    webapi.app.dependency_overrides[webapi.get_service] = lambda: service
    yield TestClient(webapi.app)
    webapi.app.dependency_overrides.clear()
