from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class ModelHandle:
    model: Optional[object] = None
    metadata: Optional[dict] = None
    active: bool = False
    activated_at: Optional[str] = None


class ModelRegistry:
    """
    Staged/active state of the model of each category.

    A freshly trained model is staged (saved, not active); forecasting only
    uses a category once ``mark_loaded`` has activated it. The registry is
    created by the app and injected into the model store and forecast path.
    """

    def __init__(self):
        self._handles: Dict[str, ModelHandle] = {}
        self._lock = Lock()

    def get(self, category: str) -> Optional[ModelHandle]:
        return self._handles.get(category)

    def set_model(self, category: str, model=None, metadata: Optional[dict] = None):
        with self._lock:
            handle = self._handles.setdefault(category, ModelHandle())
            handle.model = model
            handle.metadata = metadata
            return handle

    def mark_loaded(self, category: str, activated_at: Optional[str] = None):
        with self._lock:
            handle = self._handles.setdefault(category, ModelHandle())
            handle.active = True
            handle.activated_at = activated_at or datetime.now(timezone.utc).isoformat()
        logger.info(f"Model for {category} marked active")

    def clear_loaded(self, category: str):
        with self._lock:
            handle = self._handles.get(category)
            if handle:
                handle.active = False
                handle.activated_at = None
                handle.model = None

    def is_loaded(self, category: str) -> bool:
        handle = self._handles.get(category)
        return bool(handle and handle.active)

    def get_active(self, category: str) -> Optional[ModelHandle]:
        handle = self._handles.get(category)
        return handle if handle and handle.active else None

    def remove(self, category: str):
        with self._lock:
            self._handles.pop(category, None)


class CancellationToken:
    """Cooperative cancellation flag polled between candidates and folds"""

    def __init__(self):
        self._event = Event()

    def cancel(self):
        self._event.set()

    def reset(self):
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
