from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from cielo.engine.leases import Lease
from cielo.engine.queue import QueueItem
from cielo.engine.tasks import Task
from cielo.engine.workers import Worker
from cielo.governance.board import BoardSession
from cielo.governance.policy import PolicyRule
from cielo.logging import get_logger

logger = get_logger("state")

RecordT = TypeVar("RecordT")


class StateStoreError(RuntimeError):
    """Raised when shared-state operations fail."""


def _decode_records(
    payload: Any, from_dict: Callable[[dict[str, Any]], RecordT], namespace: str
) -> dict[str, RecordT]:
    if not isinstance(payload, dict):
        return {}
    records: dict[str, RecordT] = {}
    for key, raw in payload.items():
        if not isinstance(raw, dict):
            continue
        try:
            records[str(key)] = from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping unreadable %s record %s: %s", namespace, key, exc)
    return records


def _encode_records(records: Mapping[str, Any]) -> dict[str, Any]:
    return {key: record.to_dict() for key, record in records.items()}


def _carry_unreadable(
    namespace: str, payload: Any, decoded: Mapping[str, Any], encoded: dict[str, Any]
) -> dict[str, Any]:
    """Put raw entries that failed to decode back next to the rewritten records."""
    if not isinstance(payload, dict):
        return encoded
    unreadable = {str(key): raw for key, raw in payload.items() if str(key) not in decoded}
    clashes = sorted(set(unreadable) & set(encoded))
    if clashes:
        raise StateStoreError(
            f"Refusing to overwrite unreadable {namespace} record(s): {', '.join(clashes)}"
        )
    return {**encoded, **unreadable}


_RECORD_TYPES: dict[str, Callable[[dict[str, Any]], Any]] = {
    "leases": Lease.from_dict,
    "tasks": Task.from_dict,
    "queue": QueueItem.from_dict,
    "workers": Worker.from_dict,
}


class StateStore(ABC):
    """Namespaced JSON state with revisioned envelopes and atomic updates.

    Every namespace holds an envelope ``{schema_version, revision, updated_at,
    data}``. ``set_json`` with an ``expected_revision`` is a compare-and-swap
    under the store lock; ``update_json`` retries the read-modify-write until
    the swap lands, so concurrent writers cannot both commit a decision made
    against the same snapshot.
    """

    NAMESPACES = {"leases", "tasks", "queue", "workers", "policies", "board"}
    SCHEMA_VERSION = 1
    MAX_UPDATE_ATTEMPTS = 8

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    @abstractmethod
    def _read_raw_json(self, namespace: str) -> Any:
        """Return the stored payload for ``namespace`` or ``None``."""

    @abstractmethod
    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        """Persist ``payload`` for ``namespace``."""

    @abstractmethod
    def _state_lock(self) -> Any:
        """Context manager held around every compare-and-swap."""

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        # bare payloads written before envelopes existed
        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Atomically apply ``updater`` to the namespace payload.

        ``updater`` may run more than once and must not have side effects
        beyond its return value. Exceptions it raises abort the update.
        """
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for attempt in range(self.MAX_UPDATE_ATTEMPTS):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                logger.debug("Retrying %s update after conflict (attempt %d)", namespace, attempt)
                time.sleep(0.01 * (attempt + 1))
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def _decode(self, namespace: str, payload: Any) -> Any:
        if namespace == "board":
            return BoardSession.from_dict(payload if isinstance(payload, dict) else {})
        if namespace == "policies":
            return self._decode_rules(payload)
        return _decode_records(payload, _RECORD_TYPES[namespace], namespace)

    def _encode(self, namespace: str, value: Any) -> Any:
        if namespace == "board":
            return value.to_dict()
        if namespace == "policies":
            return {"rules": [rule.to_dict() for rule in value]}
        return _encode_records(value)

    def transact(self, namespace: str, updater: Callable[[Any], Any]) -> Any:
        """Typed read-modify-write of one namespace.

        ``updater`` receives the decoded snapshot (a dict of records keyed by
        id, a ``BoardSession`` or a list of rules) and returns the new value.
        Stored records that cannot be decoded are written back untouched.
        """
        self._validate_namespace(namespace)

        def _raw_updater(payload: Any) -> Any:
            current = self._decode(namespace, payload)
            encoded = self._encode(namespace, updater(current))
            if namespace in _RECORD_TYPES:
                return _carry_unreadable(namespace, payload, current, encoded)
            return encoded

        return self._decode(namespace, self.update_json(namespace, _raw_updater, default={}))

    def load_leases(self) -> dict[str, Lease]:
        return self._decode("leases", self.get_json("leases", default={}))

    def save_leases(self, leases: Mapping[str, Lease]) -> None:
        self.set_json("leases", self._encode("leases", leases))

    def load_tasks(self) -> dict[str, Task]:
        return self._decode("tasks", self.get_json("tasks", default={}))

    def save_tasks(self, tasks: Mapping[str, Task]) -> None:
        self.set_json("tasks", self._encode("tasks", tasks))

    def load_queue(self) -> dict[str, QueueItem]:
        return self._decode("queue", self.get_json("queue", default={}))

    def save_queue(self, items: Mapping[str, QueueItem]) -> None:
        self.set_json("queue", self._encode("queue", items))

    def load_workers(self) -> dict[str, Worker]:
        return self._decode("workers", self.get_json("workers", default={}))

    def save_workers(self, workers: Mapping[str, Worker]) -> None:
        self.set_json("workers", self._encode("workers", workers))

    def load_rules(self) -> list[PolicyRule]:
        return self._decode_rules(self.get_json("policies", default={"rules": []}))

    def _decode_rules(self, payload: Any) -> list[PolicyRule]:
        raw_rules = payload.get("rules", []) if isinstance(payload, dict) else payload
        if not isinstance(raw_rules, list):
            return []
        rules: list[PolicyRule] = []
        for raw in raw_rules:
            if not isinstance(raw, dict):
                continue
            try:
                rules.append(PolicyRule.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable policy rule %s: %s", raw.get("id"), exc)
        return rules

    def save_rules(self, rules: list[PolicyRule]) -> None:
        self.set_json("policies", self._encode("policies", rules))

    def load_board(self) -> BoardSession:
        return self._decode("board", self.get_json("board", default={}))

    def save_board(self, session: BoardSession) -> None:
        self.set_json("board", self._encode("board", session))


class FileStateStore(StateStore):
    """One JSON file per namespace inside the coordination directory."""

    def __init__(
        self,
        coord_dir: Path,
        *,
        rules_file: str = "policies.json",
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.coord_dir = Path(coord_dir).resolve()
        self.coord_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.coord_dir / ".lock"
        self.rules_file = rules_file
        self.lock_timeout_seconds = lock_timeout_seconds

    def _local_file(self, namespace: str) -> Path:
        if namespace == "policies":
            return self.coord_dir / self.rules_file
        return self.coord_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt state file %s", local_file)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        target = self._local_file(namespace)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{namespace}-", dir=self.coord_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_path, target)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StateStoreError(f"Failed to write {target}: {exc}") from exc


class MemoryStateStore(StateStore):
    """Process-local store; payloads are serialized so snapshots never alias."""

    def __init__(self) -> None:
        self._payloads: dict[str, str] = {}
        self._lock = threading.Lock()

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        with self._lock:
            yield

    def _read_raw_json(self, namespace: str) -> Any:
        serialized = self._payloads.get(namespace)
        if serialized is None:
            return None
        return json.loads(serialized)

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        self._payloads[namespace] = json.dumps(payload, ensure_ascii=False)
