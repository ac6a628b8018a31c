"""Durable inventory of nodelab instances."""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List

from nodelab.constants import INSTANCE_NAME_RE, INVENTORY_LOCK_NAME
from nodelab.exceptions import NotFound, RegistryError
from nodelab.gateway import kind_from_name
from nodelab.models import Instance, InstanceKind, InstanceStatus, PortAllocation
from nodelab.utils import ensure_directory, log


def _empty_state() -> Dict[str, Any]:
    return {"instances": [], "counters": {kind.value: 0 for kind in InstanceKind}}


def instance_from_record(record: Dict[str, Any]) -> Instance:
    """Build an Instance from a stored record, upgrading the legacy shape.

    Legacy inventories stored ``{"name", "image", "ip", "status", "vncPort",
    "telnetPort"}`` and no kind.
    """
    try:
        name = record["name"]
    except KeyError:
        raise RegistryError(f"Inventory record without a name: {record!r}")
    kind_raw = record.get("kind")
    kind = InstanceKind(kind_raw) if kind_raw else kind_from_name(name)

    ports_raw = record.get("ports") or {}
    ports = PortAllocation(
        vnc=ports_raw.get("vnc", record.get("vncPort")),
        telnet=ports_raw.get("telnet", record.get("telnetPort")),
        ssh=ports_raw.get("ssh", record.get("hostSSHPort")),
    )
    overlay = record.get("overlay_path") or record.get("image")
    if not overlay:
        raise RegistryError(f"Inventory record {name} has no overlay path")
    try:
        status = InstanceStatus(record.get("status") or InstanceStatus.STOPPED.value)
    except ValueError:
        status = InstanceStatus.STOPPED
    return Instance(
        name=name,
        kind=kind,
        overlay_path=Path(overlay),
        address=record.get("address") or record.get("ip") or "",
        status=status,
        ports=ports,
        connection_id=record.get("connection_id"),
        pid=record.get("pid"),
    )


class NodeRegistry:
    """JSON-backed store of Instance records.

    Every mutation is a full read-modify-write of the file performed inside
    :meth:`transaction`, which holds a thread lock and an exclusive
    ``flock`` on a sibling lock file. The file is replaced atomically.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.parent / INVENTORY_LOCK_NAME
        self._lock = threading.RLock()
        self._depth = 0
        self._state: Dict[str, Any] = {}
        try:
            ensure_directory(self.path.parent)
        except OSError as exc:
            raise RegistryError(f"Cannot create state directory {self.path.parent}: {exc}") from exc

    # -- storage ----------------------------------------------------------

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty_state()
        try:
            data = json.loads(self.path.read_text() or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(f"Cannot read inventory {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise RegistryError(f"Inventory {self.path} must contain a JSON object")

        state = _empty_state()
        records = data.get("instances")
        if records is None and "nodes" in data:
            records = data["nodes"]
            log("INFO", f"Upgrading legacy inventory format in {self.path}")
        state["instances"] = [instance_from_record(r).to_record() for r in records or []]
        state["counters"].update(data.get("counters") or {})
        return state

    def _write(self, state: Dict[str, Any]) -> None:
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile("w", delete=False, dir=self.path.parent, suffix=".tmp") as tmp:
                tmp_path = Path(tmp.name)
                json.dump(state, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            tmp_path.replace(self.path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise RegistryError(f"Cannot write inventory {self.path}: {exc}") from exc

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Dict[str, Any]]:
        """Yield the inventory state; changes are persisted when the block exits cleanly."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._state
                finally:
                    self._depth -= 1
                return

            try:
                lock_file = open(self.lock_path, "a")
            except OSError as exc:
                raise RegistryError(f"Cannot open inventory lock {self.lock_path}: {exc}") from exc
            with lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    self._state = self._read()
                    self._depth = 1
                    try:
                        yield self._state
                    finally:
                        self._depth = 0
                    if write or not self.path.exists():
                        self._write(self._state)
                finally:
                    self._state = {}
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    # -- queries ----------------------------------------------------------

    def load(self) -> List[Instance]:
        with self.transaction(write=False) as state:
            return [instance_from_record(r) for r in state["instances"]]

    def names(self) -> List[str]:
        return [instance.name for instance in self.load()]

    def get(self, name: str) -> Instance:
        for instance in self.load():
            if instance.name == name:
                return instance
        raise NotFound(f"Instance not found: {name}")

    # -- mutations --------------------------------------------------------

    def next_name(self, kind: InstanceKind) -> str:
        """Reserve a name that was never used before for ``kind``."""
        with self.transaction() as state:
            highest = int(state["counters"].get(kind.value, 0))
            for record in state["instances"]:
                match = INSTANCE_NAME_RE.match(record["name"])
                if match and match.group(1) == kind.value:
                    highest = max(highest, int(match.group(2)))
            index = highest + 1
            state["counters"][kind.value] = index
            return f"{kind.value}_{index}"

    def add(self, instance: Instance) -> Instance:
        with self.transaction() as state:
            if any(r["name"] == instance.name for r in state["instances"]):
                raise RegistryError(f"Instance {instance.name} already registered")
            state["instances"].append(instance.to_record())
        return instance

    def update(self, name: str, **changes: Any) -> Instance:
        with self.transaction() as state:
            for index, record in enumerate(state["instances"]):
                if record["name"] != name:
                    continue
                instance = instance_from_record(record)
                for key, value in changes.items():
                    if not hasattr(instance, key):
                        raise RegistryError(f"Unknown instance field '{key}'")
                    setattr(instance, key, value)
                state["instances"][index] = instance.to_record()
                return instance
        raise NotFound(f"Instance not found: {name}")
