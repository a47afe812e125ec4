"""
JSON documents persisted on disk.

A ConfigDocument is read once, mutated in memory and written back on demand.
The DelayedWriteCoordinator batches bursts of writes into one flush, and a
SubDocumentView lets an owner treat one field of a shared document as its own.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, TypeVar, Union

from shadowbox.core.exceptions import ConfigLoadError
from shadowbox.core.timer import LoopTimerScheduler, TimerHandle, TimerScheduler

T = TypeVar("T")

JsonObject = Dict[str, Any]


def write_file_atomically(path: Union[str, Path], text: str) -> None:
    """Replace ``path`` so readers see either the old or the new content."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class ConfigDocument(Generic[T]):
    """
    In-memory value of a JSON file.

    ``write`` only replaces the value and signals whoever listens for dirty
    state. ``persist`` is the only method that touches the disk.
    """

    def __init__(self, path: Union[str, Path], value: T):
        self._path = Path(path)
        self._value = value
        self._on_dirty: Optional[Callable[[], None]] = None

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> T:
        return self._value

    def write(self, value: T) -> None:
        self._value = value
        if self._on_dirty is not None:
            self._on_dirty()

    def persist(self) -> None:
        write_file_atomically(self._path, json.dumps(self._value))
        logging.debug(f"Persisted {self._path}")

    def set_dirty_listener(self, listener: Optional[Callable[[], None]]) -> None:
        self._on_dirty = listener


class ConfigStore:
    """Loads ConfigDocuments from disk."""

    @staticmethod
    def load(path: Union[str, Path]) -> ConfigDocument[Any]:
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                value = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigLoadError(path, e) from e
        return ConfigDocument(path, value)


class DelayedWriteCoordinator(Generic[T]):
    """
    Coalesces writes to a document into one flush per debounce window.

    At most one timer is pending. Writes that land while it is pending only
    change the in-memory value; the flush picks up whatever is current when
    the timer fires.
    """

    def __init__(
        self,
        document: ConfigDocument[T],
        delay_seconds: float,
        scheduler: Optional[TimerScheduler] = None,
    ):
        self._document = document
        self._delay_seconds = delay_seconds
        self._scheduler = scheduler or LoopTimerScheduler()
        self._timer: Optional[TimerHandle] = None
        self._pending = False
        self._document.set_dirty_listener(self.notify_dirty)

    @property
    def document(self) -> ConfigDocument[T]:
        return self._document

    @property
    def pending(self) -> bool:
        return self._pending

    def read(self) -> T:
        return self._document.read()

    def write(self, value: T) -> None:
        # The document calls back into notify_dirty
        self._document.write(value)

    def notify_dirty(self) -> None:
        if self._pending:
            return
        self._pending = True
        self._timer = self._scheduler.schedule(self._delay_seconds, self._on_timer)

    def flush_now(self) -> None:
        """Write the current value to disk and clear the pending flush."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = False
        self._document.persist()

    def close(self) -> None:
        """Force a pending flush through instead of dropping it."""
        if self._pending:
            logging.info(f"Flushing pending writes to {self._document.path}")
            self.flush_now()

    def _on_timer(self) -> None:
        self._timer = None
        try:
            self.flush_now()
        except OSError as e:
            logging.error(f"Delayed write to {self._document.path} failed: {e}")


class SubDocumentView(Generic[T]):
    """One named field of a parent document, owned by a single collector."""

    def __init__(self, parent: DelayedWriteCoordinator[JsonObject], field_name: str):
        self._parent = parent
        self._field_name = field_name

    @property
    def field_name(self) -> str:
        return self._field_name

    def read(self) -> T:
        return self._parent.read()[self._field_name]

    def write(self, value: T) -> None:
        self._parent.read()[self._field_name] = value
        self._parent.notify_dirty()
