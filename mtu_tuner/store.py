"""
Performance Store

Append-only measurement history per interface plus the derived (overwritable)
network condition model and prediction per interface. The JSON backend keeps
the three documents of the learning directory and replaces them atomically.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from .exceptions import StoreCorruptionError, ValidationError
from .locking import InterfaceLock
from .models import MeasurementRecord, NetworkConditionModel, Prediction, utcnow

logger = logging.getLogger(__name__)

STORE_VERSION = "1.0"
HISTORY_FILE = "performance_history.json"
MODELS_FILE = "optimization_models.json"
PREDICTIONS_FILE = "performance_predictions.json"


class PerformanceStore(ABC):
    """Interface-scoped history, model and prediction storage."""

    @abstractmethod
    def append(self, record: MeasurementRecord) -> None:
        """Append a record to its interface's history."""

    @abstractmethod
    def records(self, interface: str) -> List[MeasurementRecord]:
        """Return the interface's history in arrival order."""

    @abstractmethod
    def save_model(self, model: NetworkConditionModel) -> None:
        """Replace the interface's model."""

    @abstractmethod
    def load_model(self, interface: str) -> Optional[NetworkConditionModel]:
        """Return the interface's model, or None."""

    @abstractmethod
    def save_prediction(self, prediction: Prediction) -> None:
        """Replace the interface's prediction."""

    @abstractmethod
    def load_prediction(self, interface: str) -> Optional[Prediction]:
        """Return the interface's most recent prediction, or None."""

    @abstractmethod
    def interfaces(self) -> List[str]:
        """Return every interface that has history."""


class InMemoryStore(PerformanceStore):
    """Process-local store, used in tests and dry runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._history: Dict[str, List[MeasurementRecord]] = defaultdict(list)
        self._models: Dict[str, NetworkConditionModel] = {}
        self._predictions: Dict[str, Prediction] = {}

    def append(self, record: MeasurementRecord) -> None:
        with self._lock:
            self._history[record.interface].append(record)

    def records(self, interface: str) -> List[MeasurementRecord]:
        with self._lock:
            return list(self._history.get(interface, []))

    def save_model(self, model: NetworkConditionModel) -> None:
        model.validate()
        with self._lock:
            self._models[model.interface] = model

    def load_model(self, interface: str) -> Optional[NetworkConditionModel]:
        with self._lock:
            return self._models.get(interface)

    def save_prediction(self, prediction: Prediction) -> None:
        prediction.validate()
        with self._lock:
            self._predictions[prediction.interface] = prediction

    def load_prediction(self, interface: str) -> Optional[Prediction]:
        with self._lock:
            return self._predictions.get(interface)

    def interfaces(self) -> List[str]:
        with self._lock:
            return [name for name, records in self._history.items() if records]


class JsonFileStore(PerformanceStore):
    """
    Filesystem-backed store.

    Every mutation is a serialized read-modify-write: read the full document,
    apply the change, write a temp file in the same directory and rename it
    over the original. A cross-process lock on the state directory keeps
    concurrent writers from losing each other's updates.
    """

    def __init__(self, state_dir: str, lock_attempts: int = 30, lock_backoff: float = 0.1):
        """
        Initialize the store.

        Args:
            state_dir: Directory holding the history, model and prediction documents
            lock_attempts: Attempts when acquiring the state directory lock
            lock_backoff: Delay between lock attempts in seconds
        """
        self.state_dir = state_dir
        self.lock_attempts = lock_attempts
        self.lock_backoff = lock_backoff
        self._local = threading.Lock()
        os.makedirs(state_dir, exist_ok=True)

    def _path(self, name: str) -> str:
        return os.path.join(self.state_dir, name)

    def _dir_lock(self) -> InterfaceLock:
        return InterfaceLock(
            "store", self.state_dir, attempts=self.lock_attempts, backoff=self.lock_backoff
        )

    @staticmethod
    def _empty(name: str) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"version": STORE_VERSION, "last_update": utcnow().isoformat()}
        if name == HISTORY_FILE:
            doc["performance_records"] = []
        elif name == MODELS_FILE:
            doc["network_conditions"] = {}
        else:
            doc["predictions"] = {}
        return doc

    def _read(self, name: str) -> Dict[str, Any]:
        path = self._path(name)
        if not os.path.exists(path):
            return self._empty(name)
        try:
            with open(path, "r") as f:
                doc = json.load(f)
        except ValueError as e:
            raise StoreCorruptionError(f"Unparseable store document {path}", cause=e)
        except OSError as e:
            raise StoreCorruptionError(f"Unreadable store document {path}", cause=e)

        section = {
            HISTORY_FILE: ("performance_records", list),
            MODELS_FILE: ("network_conditions", dict),
            PREDICTIONS_FILE: ("predictions", dict),
        }[name]
        if not isinstance(doc, dict) or not isinstance(doc.get(section[0]), section[1]):
            raise StoreCorruptionError(f"Invalid store document {path}: missing '{section[0]}'")
        return doc

    def _write(self, name: str, doc: Dict[str, Any]) -> None:
        doc["last_update"] = utcnow().isoformat()
        fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(doc, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # Atomic rename
            os.replace(tmp_path, self._path(name))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _update(self, name: str, mutate: Callable[[Dict[str, Any]], None]) -> None:
        with self._local, self._dir_lock():
            doc = self._read(name)
            mutate(doc)
            self._write(name, doc)

    def append(self, record: MeasurementRecord) -> None:
        entry = record.to_dict()
        self._update(HISTORY_FILE, lambda doc: doc["performance_records"].append(entry))
        logger.debug(f"Recorded measurement for {record.interface} (mtu={record.mtu})")

    def records(self, interface: str) -> List[MeasurementRecord]:
        with self._local:
            doc = self._read(HISTORY_FILE)
        result = []
        for entry in doc["performance_records"]:
            if not isinstance(entry, dict):
                raise StoreCorruptionError(
                    "History entry is not an object", interface=interface, value=entry
                )
            if entry.get("interface") != interface:
                continue
            try:
                result.append(MeasurementRecord.from_dict(entry))
            except ValidationError as e:
                raise StoreCorruptionError(
                    "Invalid history record", interface=interface, value=entry, cause=e
                )
        return result

    def save_model(self, model: NetworkConditionModel) -> None:
        model.validate()
        data = model.to_dict()
        self._update(
            MODELS_FILE, lambda doc: doc["network_conditions"].__setitem__(model.interface, data)
        )

    def load_model(self, interface: str) -> Optional[NetworkConditionModel]:
        with self._local:
            doc = self._read(MODELS_FILE)
        data = doc["network_conditions"].get(interface)
        if data is None:
            return None
        try:
            return NetworkConditionModel.from_dict(data)
        except ValidationError as e:
            raise StoreCorruptionError("Invalid stored model", interface=interface, cause=e)

    def save_prediction(self, prediction: Prediction) -> None:
        prediction.validate()
        data = prediction.to_dict()
        self._update(
            PREDICTIONS_FILE,
            lambda doc: doc["predictions"].__setitem__(prediction.interface, data),
        )

    def load_prediction(self, interface: str) -> Optional[Prediction]:
        with self._local:
            doc = self._read(PREDICTIONS_FILE)
        data = doc["predictions"].get(interface)
        if data is None:
            return None
        try:
            return Prediction.from_dict(data)
        except ValidationError as e:
            raise StoreCorruptionError("Invalid stored prediction", interface=interface, cause=e)

    def interfaces(self) -> List[str]:
        with self._local:
            doc = self._read(HISTORY_FILE)
        seen: List[str] = []
        for entry in doc["performance_records"]:
            name = entry.get("interface") if isinstance(entry, dict) else None
            if isinstance(name, str) and name not in seen:
                seen.append(name)
        return seen
