import json

import numpy as np
import pytest
import torch
from unittest.mock import MagicMock
from azure.core.exceptions import ResourceExistsError

from forecast_service.utils import storage as storage_module
from forecast_service.utils.dataset import prepare_category_dataset
from forecast_service.utils.emigration_lstm import EmigrationLSTM
from forecast_service.utils.errors import ModelImportError, ModelNotFoundError
from forecast_service.utils.forecaster import generate_forecast_from_model
from forecast_service.utils.state import ModelRegistry
from forecast_service.utils.storage import (
    ModelStore,
    decode_weights,
    encode_weights,
    active_marker_path,
    metadata_blob_path,
    model_blob_path,
)

FIELDS = ["male", "female"]


@pytest.fixture
def model():
    network = EmigrationLSTM({"FIELDS": FIELDS, "LOOKBACK": 3, "UNITS": [8, 4], "DROPOUT": [0.2, 0.1]})
    network.eval()
    return network


@pytest.fixture
def metadata(short_sex_series):
    dataset = prepare_category_dataset(short_sex_series, FIELDS, 3)
    return {
        "category": "sex",
        "fields": FIELDS,
        "fieldLabels": {"male": "Male", "female": "Female"},
        "lookback": 3,
        "stats": dataset.stats_dict(),
        "rawRecords": [dict(r) for r in dataset.raw_records],
        "metrics": {"male": {"mae": 1.0, "rmse": 1.0, "accuracy": 99.0}},
        "avgAccuracy": 99.0,
        "bestConfig": {"id": 2, "lookback": 3, "units": [8, 4], "dropout": [0.2, 0.1]},
        "trainedAt": "2024-01-01T00:00:00+00:00",
    }


def test_get_storage_client_creates_container(monkeypatch):
    container_client = MagicMock()
    service = MagicMock()
    service.get_container_client.return_value = container_client
    monkeypatch.setattr(storage_module.BlobServiceClient, "from_connection_string", lambda conn: service)
    returned = storage_module.get_storage_client("fake-conn", "models")
    assert returned is container_client
    container_client.create_container.assert_called_once()


def test_get_storage_client_handles_existing_container(monkeypatch):
    container_client = MagicMock()
    container_client.create_container.side_effect = ResourceExistsError("exists")
    service = MagicMock()
    service.get_container_client.return_value = container_client
    monkeypatch.setattr(storage_module.BlobServiceClient, "from_connection_string", lambda conn: service)
    assert storage_module.get_storage_client("fake-conn", "models") is container_client


def test_blob_paths():
    assert model_blob_path("civilStatus") == "models/civilStatus.pt"
    assert metadata_blob_path("sex") == "metadata/sex.json"
    assert active_marker_path("sex") == "active/sex.json"


class TestModelStore:
    """Save, load and activation"""

    def test_save_and_load(self, store, container_client, model, metadata):
        paths = store.save(model, metadata, "sex")
        assert set(container_client.blobs) == {paths["model_path"], paths["metadata_path"]}

        loaded = store.load("sex")
        inputs = torch.rand(2, 3, 2)
        assert torch.allclose(loaded(inputs), model(inputs))
        assert store.load_metadata("sex") == metadata

    def test_load_missing_model(self, store):
        with pytest.raises(ModelNotFoundError):
            store.load("sex")
        with pytest.raises(FileNotFoundError):
            store.load("civilStatus")

    def test_load_metadata_missing_or_corrupt(self, store, container_client):
        assert store.load_metadata("sex") is None
        container_client.blobs[metadata_blob_path("sex")] = b"{not json"
        assert store.load_metadata("sex") is None

    def test_saved_model_is_staged_until_loaded(self, store, model, metadata):
        store.save(model, metadata, "sex")
        assert not store.is_loaded("sex")
        with pytest.raises(ModelNotFoundError):
            store.load_active("sex")

        returned = store.mark_loaded("sex")
        assert returned["avgAccuracy"] == 99.0
        assert store.is_loaded("sex")
        active_model, active_metadata = store.load_active("sex")
        assert isinstance(active_model, EmigrationLSTM)
        assert active_metadata["lookback"] == 3

    def test_mark_loaded_without_saved_model(self, store):
        with pytest.raises(ModelNotFoundError, match="No saved model available to load"):
            store.mark_loaded("sex")

    def test_retraining_clears_active_flag(self, store, model, metadata):
        store.save(model, metadata, "sex")
        store.mark_loaded("sex")
        store.save(model, metadata, "sex")
        store.clear_loaded("sex")
        assert not store.is_loaded("sex")

    def test_categories_are_independent(self, store, model, metadata):
        store.save(model, metadata, "sex")
        store.mark_loaded("sex")
        assert not store.is_loaded("civilStatus")
        with pytest.raises(ModelNotFoundError):
            store.load_active("civilStatus")

    def test_delete(self, store, container_client, model, metadata):
        store.save(model, metadata, "sex")
        store.mark_loaded("sex")
        store.delete("sex")
        assert container_client.blobs == {}
        assert not store.is_loaded("sex")
        # nothing left to delete is not an error
        store.delete("sex")

    def test_registry_shared_between_stores(self, container_client, model, metadata):
        registry = ModelRegistry()
        ModelStore(container_client, registry).save(model, metadata, "sex")
        ModelStore(container_client, registry).mark_loaded("sex")
        assert ModelStore(container_client, registry).is_loaded("sex")

    def test_active_flag_survives_a_new_worker(self, container_client, model, metadata):
        first = ModelStore(container_client, ModelRegistry())
        first.save(model, metadata, "sex")
        first.mark_loaded("sex")
        assert active_marker_path("sex") in container_client.blobs

        # a fresh process starts with an empty registry over the same container
        second = ModelStore(container_client, ModelRegistry())
        assert second.is_loaded("sex")
        active_model, active_metadata = second.load_active("sex")
        inputs = torch.rand(2, 3, 2)
        assert torch.allclose(active_model(inputs), model(inputs))
        assert active_metadata == metadata
        assert not second.is_loaded("civilStatus")

    def test_clear_loaded_removes_the_active_marker(self, container_client, model, metadata):
        first = ModelStore(container_client, ModelRegistry())
        first.save(model, metadata, "sex")
        first.mark_loaded("sex")
        first.clear_loaded("sex")

        assert active_marker_path("sex") not in container_client.blobs
        second = ModelStore(container_client, ModelRegistry())
        assert not second.is_loaded("sex")
        with pytest.raises(ModelNotFoundError):
            second.load_active("sex")

    def test_retrain_on_another_worker_deactivates_cached_model(self, container_client, model, metadata):
        first = ModelStore(container_client, ModelRegistry())
        first.save(model, metadata, "sex")
        first.mark_loaded("sex")
        first.load_active("sex")

        other = ModelStore(container_client, ModelRegistry())
        other.save(model, metadata, "sex")
        other.clear_loaded("sex")

        assert not first.is_loaded("sex")
        with pytest.raises(ModelNotFoundError):
            first.load_active("sex")


class TestWeightEncoding:
    """Portable float32 weight buffer"""

    def test_round_trip(self, model):
        specs, data = encode_weights(model)
        assert len(data) == sum(int(np.prod(s["shape"])) for s in specs) * 4
        state_dict = decode_weights(specs, data)
        for name, tensor in model.state_dict().items():
            assert torch.equal(state_dict[name], tensor)

    def test_short_buffer(self, model):
        specs, data = encode_weights(model)
        with pytest.raises(ModelImportError):
            decode_weights(specs, data[:-4])

    def test_trailing_bytes(self, model):
        specs, data = encode_weights(model)
        with pytest.raises(ModelImportError):
            decode_weights(specs, data + b"\x00\x00\x00\x00")

    def test_unsupported_dtype(self, model):
        specs, data = encode_weights(model)
        specs[0]["dtype"] = "int32"
        with pytest.raises(ModelImportError):
            decode_weights(specs, data)


class TestExportImport:
    """Model package download and upload"""

    def test_export_requires_saved_model(self, store):
        with pytest.raises(ModelNotFoundError):
            store.export_artifacts("sex")

    def test_export_package_shape(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        assert package["category"] == "sex"
        assert package["metadata"] == metadata
        assert package["model"]["topology"]["units"] == [8, 4]
        assert all(0 <= b <= 255 for b in package["model"]["weightData"][:16])

    def test_round_trip_gives_identical_forecast(self, store, make_store, model, metadata):
        store.save(model, metadata, "sex")
        package = json.dumps(store.export_artifacts("sex")).encode("utf-8")
        other_store = make_store()
        category, imported_metadata = other_store.import_artifacts(package)

        assert category == "sex"
        assert imported_metadata == metadata
        assert other_store.is_loaded("sex")
        imported_model, _ = other_store.load_active("sex")

        original = generate_forecast_from_model(model, metadata, periods=3)
        restored = generate_forecast_from_model(imported_model, imported_metadata, periods=3)
        assert restored["futureForecast"] == original["futureForecast"]
        assert restored["chartSeries"] == original["chartSeries"]

    def test_import_rejects_invalid_json(self, store):
        with pytest.raises(ModelImportError, match="not valid JSON"):
            store.import_artifacts(b"{broken")

    def test_import_rejects_missing_fields(self, store):
        with pytest.raises(ModelImportError, match="missing required fields"):
            store.import_artifacts({"category": "sex", "metadata": {}})

    def test_import_rejects_weights_that_do_not_fit(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        package["model"]["topology"]["units"] = [16, 4]

        with pytest.raises(ModelImportError):
            store.import_artifacts(package)
        assert not store.is_loaded("sex")

    def test_import_rejects_truncated_weights(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        package["model"]["weightData"] = package["model"]["weightData"][:-8]

        with pytest.raises(ModelImportError):
            store.import_artifacts(package)

    def test_import_rejects_unknown_category(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        package["category"] = "age"

        with pytest.raises(ModelImportError, match="unknown category"):
            store.import_artifacts(package)

    def test_import_rejects_metadata_of_another_category(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        package["category"] = "civilStatus"
        package["metadata"] = {**package["metadata"], "category": "civilStatus",
                               "fields": ["single", "married", "widower", "separated", "divorced", "notReported"]}

        with pytest.raises(ModelImportError, match="do not match the network topology"):
            store.import_artifacts(package)
        assert not store.is_loaded("civilStatus")
        assert store.load_metadata("civilStatus") is None

    def test_import_rejects_fields_outside_the_category(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        package["category"] = "civilStatus"
        package["metadata"] = {**package["metadata"], "category": "civilStatus"}

        with pytest.raises(ModelImportError, match="civilStatus fields"):
            store.import_artifacts(package)
        assert not store.is_loaded("civilStatus")

    def test_import_rejects_lookback_mismatch(self, store, model, metadata):
        store.save(model, metadata, "sex")
        package = store.export_artifacts("sex")
        package["metadata"] = {**package["metadata"], "lookback": 5}

        with pytest.raises(ModelImportError, match="lookback"):
            store.import_artifacts(package)
        assert not store.is_loaded("sex")
