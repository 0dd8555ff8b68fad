"""Backing store of experiment documents (entity sets and provider state).

Documents are JSON-compatible values identified by experiment id and a logical key.
"""

import abc
import contextlib
import json
import logging
import os
import pathlib as pl
import re
import tempfile
import typing as tp

from fleet_provisioning.utils import locking
from fleet_provisioning.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

LOCK_FILE = ".experiment.lock"

_SANITIZE_RE = re.compile("[^a-zA-Z0-9_.-]+")


def sanitize_name(s: str) -> str:
    """Sanitize experiment id or document key so it can be used as a file name."""
    sanitized = _SANITIZE_RE.sub("_", s).strip("._")
    if not sanitized:
        msg = f"Invalid document name: {s!r}"
        raise ValueError(msg)
    return sanitized


class DataStore(abc.ABC):
    """Interface of the backing store."""

    @abc.abstractmethod
    def get_state(self, experiment_id: str, key: str) -> tp.Any:
        """Return stored document, or None when there is no such document."""

    @abc.abstractmethod
    def save_state(self, experiment_id: str, key: str, value: tp.Any) -> None:
        """Store (replace) a document."""

    @abc.abstractmethod
    def delete_state(self, experiment_id: str, key: str) -> None:
        """Delete a document, if it exists."""

    @contextlib.contextmanager
    def locked(self, experiment_id: str) -> tp.Iterator[None]:  # noqa: ARG002
        """Serialize read-modify-write of experiment documents."""
        yield

    def update_state(
        self,
        experiment_id: str,
        key: str,
        func: tp.Callable[[tp.Any], tp.Any],
    ) -> tp.Any:
        """Replace a document with the result of `func(current_document)`."""
        with self.locked(experiment_id):
            value = func(self.get_state(experiment_id, key))
            self.save_state(experiment_id, key, value)
        return value


class JsonFileStore(DataStore):
    """Store every document as a JSON file in `base_dir/<experiment_id>/<key>.json`."""

    def __init__(self, base_dir: ttypes.FileType) -> None:
        self.base_dir = pl.Path(base_dir).expanduser().resolve()
        self._locks: dict[str, locking.StoreLock] = {}

    def get_experiment_dir(self, experiment_id: str) -> pl.Path:
        return self.base_dir / sanitize_name(experiment_id)

    def get_document_path(self, experiment_id: str, key: str) -> pl.Path:
        return self.get_experiment_dir(experiment_id) / f"{sanitize_name(key)}.json"

    @contextlib.contextmanager
    def locked(self, experiment_id: str) -> tp.Iterator[None]:
        exp_dir = self.get_experiment_dir(experiment_id)
        exp_dir.mkdir(parents=True, exist_ok=True)
        lock = self._locks.get(experiment_id)
        if lock is None:
            lock = locking.StoreLock(exp_dir / LOCK_FILE)
            self._locks[experiment_id] = lock
        # `FileLock` is reentrant within a single lock object
        with lock:
            yield

    def get_state(self, experiment_id: str, key: str) -> tp.Any:
        doc_path = self.get_document_path(experiment_id, key)
        if not doc_path.exists():
            return None
        with open(doc_path, encoding="utf-8") as in_fp:
            return json.load(in_fp)

    def save_state(self, experiment_id: str, key: str, value: tp.Any) -> None:
        doc_path = self.get_document_path(experiment_id, key)
        with self.locked(experiment_id):
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{doc_path.stem}_", suffix=".tmp", dir=doc_path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as out_fp:
                    json.dump(value, out_fp, indent=2)
                os.replace(tmp_name, doc_path)
            except BaseException:
                pl.Path(tmp_name).unlink(missing_ok=True)
                raise
        LOGGER.debug(f"Saved document '{key}' of experiment '{experiment_id}'.")

    def delete_state(self, experiment_id: str, key: str) -> None:
        doc_path = self.get_document_path(experiment_id, key)
        with self.locked(experiment_id):
            doc_path.unlink(missing_ok=True)
