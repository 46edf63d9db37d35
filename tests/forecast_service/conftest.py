import pytest
from azure.core.exceptions import ResourceNotFoundError

from forecast_service.utils.state import ModelRegistry
from forecast_service.utils.storage import ModelStore


class FakeDownload:
    def __init__(self, data):
        self._data = data

    def readall(self):
        return self._data


class FakeBlobClient:
    """In-memory stand-in for azure.storage.blob.BlobClient"""

    def __init__(self, blobs, path):
        self.blobs = blobs
        self.path = path

    def exists(self):
        return self.path in self.blobs

    def upload_blob(self, data, overwrite=False):
        self.blobs[self.path] = data.encode("utf-8") if isinstance(data, str) else bytes(data)

    def download_blob(self):
        return FakeDownload(self.blobs[self.path])

    def delete_blob(self):
        if self.path not in self.blobs:
            raise ResourceNotFoundError("blob not found")
        del self.blobs[self.path]


class FakeContainerClient:
    def __init__(self):
        self.blobs = {}

    def get_blob_client(self, path):
        return FakeBlobClient(self.blobs, path)


@pytest.fixture(autouse=True)
def quiet_progress_bar(monkeypatch):
    monkeypatch.setenv("ENABLE_PROGRESS_BAR", "false")


@pytest.fixture
def container_client():
    return FakeContainerClient()


@pytest.fixture
def registry():
    return ModelRegistry()


@pytest.fixture
def store(container_client, registry):
    return ModelStore(container_client, registry)


@pytest.fixture
def sex_series():
    """Twelve years of male/female emigrant counts (2012-2023)"""
    male = [78000, 81000, 83500, 80000, 86000, 88500, 90000, 87000, 42000, 51000, 69000, 76000]
    female = [95000, 99000, 101000, 98500, 104000, 108000, 111000, 107500, 56000, 63000, 84000, 93000]
    return [
        {"year": 2012 + i, "male": m, "female": f}
        for i, (m, f) in enumerate(zip(male, female))
    ]


@pytest.fixture
def short_sex_series():
    """Six years (2018-2023): three windows at lookback 3"""
    return [
        {"year": 2018, "male": 100, "female": 150},
        {"year": 2019, "male": 120, "female": 160},
        {"year": 2020, "male": 90, "female": 140},
        {"year": 2021, "male": 110, "female": 155},
        {"year": 2022, "male": 130, "female": 170},
        {"year": 2023, "male": 125, "female": 165},
    ]


@pytest.fixture
def linear_sex_series():
    """Six years (2018-2023) on exact linear trends"""
    return [
        {"year": year, "male": 100 + 10 * i, "female": 90 + 5 * i}
        for i, year in enumerate(range(2018, 2024))
    ]


@pytest.fixture
def make_store():
    """Factory for independent stores (a second deployment importing a package)"""
    def factory():
        return ModelStore(FakeContainerClient(), ModelRegistry())
    return factory
