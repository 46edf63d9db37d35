from azure.storage.blob import BlobServiceClient
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
import logging
import json
import io
from typing import Optional

import numpy as np
import torch

from .categories import DEFAULT_CATEGORY, get_category, is_known_category
from .emigration_lstm import EmigrationLSTM
from .errors import ModelImportError, ModelNotFoundError
from .state import ModelRegistry

logger = logging.getLogger(__name__)

WEIGHT_DTYPE = "<f4"


def get_storage_client(conn_str: str, container_name: str):
    """Returns a configured container client, creating the container if needed"""
    try:
        blob_service = BlobServiceClient.from_connection_string(conn_str)
        container_client = blob_service.get_container_client(container_name)

        try:
            container_client.create_container()
            logger.info(f"Container {container_name} created")
        except ResourceExistsError:
            logger.info(f"Container {container_name} already exists")

        return container_client
    except Exception:
        logger.exception("Failed to connect to Azure Blob Storage")
        raise


def model_blob_path(category: str) -> str:
    return f"models/{category}.pt"


def metadata_blob_path(category: str) -> str:
    return f"metadata/{category}.json"


def active_marker_path(category: str) -> str:
    return f"active/{category}.json"


def serialize_model(model: EmigrationLSTM) -> bytes:
    """Topology plus state dict, as torch.save bytes"""
    buffer = io.BytesIO()
    torch.save({"topology": model.topology(), "state_dict": model.state_dict()}, buffer)
    buffer.seek(0)
    return buffer.read()


def deserialize_model(model_bytes: bytes) -> EmigrationLSTM:
    payload = torch.load(io.BytesIO(model_bytes), map_location="cpu", weights_only=True)
    model = EmigrationLSTM.from_topology(payload["topology"])
    model.load_state_dict(payload["state_dict"])
    model.eval()
    return model


def encode_weights(model: EmigrationLSTM):
    """
    Flattens the state dict into weight specs plus one little-endian float32 buffer.

    Returns:
        tuple: (weight_specs, weight_bytes)
    """
    specs = []
    chunks = []
    for name, tensor in model.state_dict().items():
        array = tensor.detach().cpu().numpy().astype(WEIGHT_DTYPE)
        specs.append({"name": name, "shape": list(array.shape), "dtype": "float32"})
        chunks.append(array.tobytes())
    return specs, b"".join(chunks)


def decode_weights(weight_specs, weight_data: bytes):
    """Inverse of ``encode_weights``; raises ModelImportError on size mismatches"""
    state_dict = {}
    offset = 0
    item_size = np.dtype(WEIGHT_DTYPE).itemsize
    for weight_spec in weight_specs:
        if weight_spec.get("dtype", "float32") != "float32":
            raise ModelImportError(f"Unsupported weight dtype {weight_spec.get('dtype')} for {weight_spec.get('name')}")
        shape = [int(dim) for dim in weight_spec["shape"]]
        count = int(np.prod(shape)) if shape else 1
        end = offset + count * item_size
        if end > len(weight_data):
            raise ModelImportError(f"Weight data too short for {weight_spec['name']}")
        array = np.frombuffer(weight_data, dtype=WEIGHT_DTYPE, count=count, offset=offset).reshape(shape)
        state_dict[weight_spec["name"]] = torch.tensor(array.astype(np.float32))
        offset = end
    if offset != len(weight_data):
        raise ModelImportError(f"Weight data has {len(weight_data) - offset} unexpected trailing bytes")
    return state_dict


def check_package_consistency(category: str, metadata: dict, topology: dict):
    """
    Rejects packages whose metadata does not describe the packaged network.

    Raises:
        ModelImportError: fields or lookback differ between metadata, topology
                          and the category table
    """
    topology_fields = list(topology.get("fields") or [])
    if list(metadata.get("fields") or []) != topology_fields:
        raise ModelImportError("Model metadata fields do not match the network topology.")
    expected_fields = get_category(category).field_keys
    if topology_fields != expected_fields:
        raise ModelImportError(
            f"Model fields {topology_fields} do not match the {category} fields {expected_fields}."
        )
    if metadata.get("lookback") != topology.get("lookback"):
        raise ModelImportError(
            f"Model metadata lookback {metadata.get('lookback')} does not match the network "
            f"lookback {topology.get('lookback')}."
        )


class ModelStore:
    """
    Persists trained models and their metadata per category.

    The network and the metadata are two independent blobs joined only by
    the category key. Saving stages a model; ``mark_loaded`` activates it in
    the injected ModelRegistry.
    """

    def __init__(self, container_client, registry: ModelRegistry = None):
        self.container_client = container_client
        self.registry = registry or ModelRegistry()

    def _upload(self, path: str, data):
        self.container_client.get_blob_client(path).upload_blob(data, overwrite=True)

    def _download(self, path: str):
        blob_client = self.container_client.get_blob_client(path)
        if not blob_client.exists():
            return None
        return blob_client.download_blob().readall()

    def save(self, model: EmigrationLSTM, metadata: dict, category: str = DEFAULT_CATEGORY):
        """
        Saves network and metadata for a category, replacing any previous pair.

        Returns:
            dict: blob paths written
        """
        try:
            model_path = model_blob_path(category)
            metadata_path = metadata_blob_path(category)

            self._upload(model_path, serialize_model(model))
            logger.info(f"Model saved: {model_path}")

            self._upload(metadata_path, json.dumps(metadata).encode("utf-8"))
            logger.info(f"Metadata saved: {metadata_path}")

            return {"model_path": model_path, "metadata_path": metadata_path}

        except Exception:
            logger.exception(f"Failed to save model for {category}")
            raise

    def load(self, category: str = DEFAULT_CATEGORY) -> EmigrationLSTM:
        """
        Raises:
            ModelNotFoundError: no saved model for the category
        """
        model_bytes = self._download(model_blob_path(category))
        if model_bytes is None:
            raise ModelNotFoundError(f"No saved model for {category}")
        try:
            model = deserialize_model(model_bytes)
            logger.info(f"Model loaded: {model_blob_path(category)}")
            return model
        except Exception:
            logger.exception(f"Failed to load model for {category}")
            raise

    def load_metadata(self, category: str = DEFAULT_CATEGORY):
        """Saved metadata, or None when missing or unreadable"""
        raw = self._download(metadata_blob_path(category))
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (ValueError, UnicodeDecodeError):
            logger.error(f"Failed to parse LSTM metadata for {category}")
            return None

    def _delete_blob(self, path: str) -> bool:
        try:
            self.container_client.get_blob_client(path).delete_blob()
            logger.info(f"Blob deleted: {path}")
            return True
        except ResourceNotFoundError:
            return False

    def delete(self, category: str = DEFAULT_CATEGORY):
        for path in (model_blob_path(category), metadata_blob_path(category)):
            if not self._delete_blob(path):
                logger.warning(f"No stored blob to delete at {path}")
        self.clear_loaded(category)
        self.registry.remove(category)

    def _activate(self, category: str, model: EmigrationLSTM, metadata: dict):
        """Caches the model as active and writes the durable active marker"""
        self.registry.set_model(category, model=model, metadata=metadata)
        self.registry.mark_loaded(category)
        marker = {"category": category, "activatedAt": self.registry.get(category).activated_at}
        self._upload(active_marker_path(category), json.dumps(marker).encode("utf-8"))

    def mark_loaded(self, category: str = DEFAULT_CATEGORY):
        """
        Activates the saved model of a category for forecasting.

        The active flag is kept in the registry of this process and in an
        ``active/{category}.json`` marker blob, so other instances and cold
        starts see the same state.

        Raises:
            ModelNotFoundError: nothing saved for the category
        """
        metadata = self.load_metadata(category)
        if metadata is None:
            raise ModelNotFoundError("No saved model available to load.")
        model = self.load(category)
        self._activate(category, model, metadata)
        return metadata

    def clear_loaded(self, category: str = DEFAULT_CATEGORY):
        self.registry.clear_loaded(category)
        if self._delete_blob(active_marker_path(category)):
            logger.info(f"Model for {category} is no longer active")

    def _read_active_marker(self, category: str) -> Optional[dict]:
        raw = self._download(active_marker_path(category))
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (ValueError, UnicodeDecodeError):
            logger.error(f"Failed to parse active marker for {category}")
            return None

    def is_loaded(self, category: str = DEFAULT_CATEGORY) -> bool:
        """The marker blob is the source of truth, shared by every instance"""
        return self._read_active_marker(category) is not None

    def load_active(self, category: str = DEFAULT_CATEGORY):
        """
        Active model and metadata of a category.

        The cached handle is reused only while it matches the marker blob,
        so activations and retrains made by other instances are picked up.

        Returns:
            tuple: (model, metadata)

        Raises:
            ModelNotFoundError: no active model, or its metadata is gone
        """
        label = get_category(category).label
        marker = self._read_active_marker(category)
        if marker is None:
            self.registry.clear_loaded(category)
            raise ModelNotFoundError(
                f"No {label} model is loaded. Train or load a model, then load it for forecasting."
            )
        handle = self.registry.get_active(category)
        if handle is None or handle.activated_at != marker.get("activatedAt"):
            logger.info(f"Restoring active {category} model from storage")
            self.registry.set_model(category)
            self.registry.mark_loaded(category, activated_at=marker.get("activatedAt"))
            handle = self.registry.get_active(category)
        if handle.metadata is None:
            handle.metadata = self.load_metadata(category)
            if handle.metadata is None:
                raise ModelNotFoundError(f"Saved {label} model metadata is missing. Please retrain and load the model.")
        if handle.model is None:
            handle.model = self.load(category)
        return handle.model, handle.metadata

    def export_artifacts(self, category: str = DEFAULT_CATEGORY) -> dict:
        """
        Portable JSON package of the saved model.

        Returns:
            dict: {"category", "metadata", "model": {"topology", "weightSpecs", "weightData"}}
        """
        metadata = self.load_metadata(category)
        if not metadata:
            raise ModelNotFoundError("No saved model available to download.")

        model = self.load(category)
        weight_specs, weight_bytes = encode_weights(model)

        logger.info(f"Model exported for {category}: {len(weight_bytes)} weight bytes")
        return {
            "category": category,
            "metadata": metadata,
            "model": {
                "topology": model.topology(),
                "weightSpecs": weight_specs,
                "weightData": list(weight_bytes),
            },
        }

    def import_artifacts(self, package):
        """
        Restores an exported package, saves it and activates it.

        Args:
            package: dict, JSON string or JSON bytes from ``export_artifacts``

        Returns:
            tuple: (category, metadata)

        Raises:
            ModelImportError: invalid JSON, missing fields or weights that do
                              not fit the topology
        """
        if isinstance(package, (bytes, bytearray, str)):
            try:
                package = json.loads(package)
            except ValueError as e:
                raise ModelImportError("Uploaded model package is not valid JSON.") from e

        if not isinstance(package, dict) or not package.get("model") or not package.get("metadata"):
            raise ModelImportError("Model package is missing required fields.")

        metadata = package["metadata"]
        category = package.get("category") or metadata.get("category") or DEFAULT_CATEGORY
        if not is_known_category(category):
            raise ModelImportError(f"Model package has unknown category '{category}'.")
        model_section = package["model"]
        topology = model_section.get("topology") if isinstance(model_section, dict) else None
        if not isinstance(topology, dict):
            raise ModelImportError("Model package is missing the network topology.")
        check_package_consistency(category, metadata, topology)

        try:
            model = EmigrationLSTM.from_topology(topology)
            weight_data = bytes(model_section.get("weightData") or [])
            state_dict = decode_weights(model_section.get("weightSpecs") or [], weight_data)
            model.load_state_dict(state_dict)
        except ModelImportError:
            raise
        except (KeyError, TypeError, ValueError, RuntimeError) as e:
            logger.exception(f"Rejected model package for {category}")
            raise ModelImportError(f"Model package does not match its topology: {e}") from e

        model.eval()
        self.save(model, metadata, category)
        self._activate(category, model, metadata)

        logger.info(f"Model imported and activated for {category}")
        return category, metadata
