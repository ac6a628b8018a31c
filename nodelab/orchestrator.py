"""Lifecycle orchestration for nodelab nodes and routers."""

from __future__ import annotations

import fcntl
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from nodelab.allocator import PortAllocator
from nodelab.constants import NODE_ADDRESS_OFFSET
from nodelab.exceptions import GatewaySyncFailed, InstanceExists, ManagerError
from nodelab.gateway import GuacamoleGateway, protocol_for
from nodelab.models import (
    Instance,
    InstanceKind,
    InstanceStatus,
    InstanceView,
    LabConfig,
    PortAllocation,
    RunResult,
    WipeAllResult,
)
from nodelab.overlay import OverlayStore
from nodelab.process import ProcessController
from nodelab.registry import NodeRegistry
from nodelab.utils import ensure_directory, log


class LabOrchestrator:
    """Public operations over the registry, overlays, processes and console gateway.

    Within one operation the overlay is prepared before the hypervisor
    starts, and the hypervisor starts before the console gateway is synced.
    Operations on the same instance are serialized by a per-name lock,
    across threads and across concurrent nodelab processes.
    """

    def __init__(
        self,
        config: LabConfig,
        registry: Optional[NodeRegistry] = None,
        overlays: Optional[OverlayStore] = None,
        controller: Optional[ProcessController] = None,
        gateway: Optional[GuacamoleGateway] = None,
    ) -> None:
        self.cfg = config
        self.registry = registry or NodeRegistry(config.inventory_path)
        self.overlays = overlays or OverlayStore(config.overlay_dir, config.profiles)
        self.controller = controller or ProcessController(config, PortAllocator(config.port_pool_size))
        self.gateway = gateway or GuacamoleGateway(
            config.guac_db_url,
            base_url=config.guacamole_url,
            admin=config.guac_admin,
            timeout=config.guac_db_timeout,
        )
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_path(self, name: str) -> Path:
        return self.cfg.run_dir / f"{name}.lock"

    @contextmanager
    def _instance_lock(self, name: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            path = self.lock_path(name)
            try:
                ensure_directory(path.parent)
                lock_file = open(path, "a")
            except OSError as exc:
                raise ManagerError(f"Cannot open instance lock {path}: {exc}") from exc
            with lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _address_for(self, kind: InstanceKind, name: str) -> str:
        if kind is InstanceKind.ROUTER:
            return self.cfg.router_address
        index = int(name.rsplit("_", 1)[1])
        host = NODE_ADDRESS_OFFSET + index
        if host > 254:
            raise ManagerError(f"No address left in {self.cfg.node_subnet}.0/24 for {name}")
        return f"{self.cfg.node_subnet}.{host}"

    # -- create -----------------------------------------------------------

    def create(self, kind: InstanceKind = InstanceKind.NODE) -> Instance:
        if kind is InstanceKind.ROUTER and any(i.is_router for i in self.registry.load()):
            raise InstanceExists("A router already exists; only one router is supported")
        name = self.registry.next_name(kind)
        address = self._address_for(kind, name)
        overlay_path = self.overlays.create_overlay(name, kind)
        instance = Instance(
            name=name,
            kind=kind,
            overlay_path=overlay_path,
            address=address,
            status=InstanceStatus.STOPPED,
        )
        self.registry.add(instance)
        log("SUCCESS", f"Created {kind.value} {name} ({address})")
        return instance

    def create_router(self) -> Instance:
        return self.create(InstanceKind.ROUTER)

    # -- run / stop -------------------------------------------------------

    @staticmethod
    def _console_port(instance: Instance, ports: PortAllocation) -> Optional[int]:
        return ports.telnet if instance.is_router else ports.vnc

    def run(self, name: str) -> RunResult:
        with self._instance_lock(name):
            instance = self.registry.get(name)
            if not self.overlays.validate(instance.overlay_path):
                log("WARN", f"Overlay for {name} missing or empty; recreating from base image")
                instance.overlay_path = self.overlays.create_overlay(name, instance.kind)

            launch = self.controller.start(instance)
            instance = self.registry.update(
                name,
                status=InstanceStatus.RUNNING,
                ports=launch.ports,
                pid=launch.pid,
                overlay_path=instance.overlay_path,
            )

            protocol = protocol_for(instance.kind)
            port = self._console_port(instance, launch.ports)
            console_url = None
            gateway_error = None
            try:
                connection_id = self.gateway.sync_connection(name, self.cfg.guac_target_host, port, protocol)
            except GatewaySyncFailed as exc:
                gateway_error = str(exc)
                log("WARN", f"{name} is running but its console could not be registered: {exc}")
            else:
                self.registry.update(name, connection_id=connection_id)
                console_url = self.gateway.console_url(connection_id)
                log("INFO", f"Console URL: {console_url}")

        return RunResult(name=name, ports=launch.ports, console_url=console_url, gateway_error=gateway_error)

    def stop(self, name: str) -> bool:
        with self._instance_lock(name):
            self.registry.get(name)
            stopped = self.controller.stop(name)
            self.registry.update(name, status=InstanceStatus.STOPPED, ports=PortAllocation(), pid=None)
        return stopped

    # -- wipe -------------------------------------------------------------

    def wipe(self, name: str) -> Instance:
        with self._instance_lock(name):
            instance = self.registry.get(name)
            self.controller.stop(name)
            self.registry.update(name, status=InstanceStatus.STOPPED, ports=PortAllocation(), pid=None)
            try:
                self.gateway.delete_connection(name)
            except GatewaySyncFailed as exc:
                log("WARN", f"Could not remove console connection for {name}: {exc}")
            self.overlays.wipe_overlay(instance.overlay_path, instance.kind)
            instance = self.registry.update(
                name,
                status=InstanceStatus.STOPPED,
                ports=PortAllocation(),
                connection_id=None,
                pid=None,
            )
        log("SUCCESS", f"{name} reset successfully")
        return instance

    def wipe_all(self, halt_on_failure: bool = False) -> WipeAllResult:
        """Wipe every registered instance in order.

        By default every instance is attempted and failures are collected.
        With ``halt_on_failure`` the first failure ends the batch and the
        remaining instances are reported as skipped.
        """
        result = WipeAllResult()
        names = self.registry.names()
        for position, name in enumerate(names):
            try:
                self.wipe(name)
            except ManagerError as exc:
                log("ERROR", f"Error resetting {name}: {exc}")
                result.failed[name] = str(exc)
                if halt_on_failure:
                    result.skipped = names[position + 1:]
                    break
            else:
                result.wiped.append(name)
        if result.ok:
            log("SUCCESS", f"All {len(result.wiped)} instance(s) stopped and wiped")
        else:
            log("WARN", f"Wiped {len(result.wiped)}, failed {len(result.failed)}, skipped {len(result.skipped)}")
        return result

    # -- status -----------------------------------------------------------

    def _refresh(self, instance: Instance) -> Instance:
        running = self.controller.is_running(instance.name)
        live = InstanceStatus.RUNNING if running else InstanceStatus.STOPPED
        if live is instance.status:
            return instance
        log("INFO", f"Status of {instance.name} corrected: {instance.status.value} -> {live.value}")
        changes = {"status": live}
        if not running:
            self.controller.allocator.release(instance.name)
            changes.update(pid=None, ports=PortAllocation())
        return self.registry.update(instance.name, **changes)

    def list_instances(self) -> List[InstanceView]:
        views = []
        for instance in self.registry.load():
            instance = self._refresh(instance)
            console_url = None
            if instance.status is InstanceStatus.RUNNING and instance.connection_id is not None:
                console_url = self.gateway.console_url(instance.connection_id)
            views.append(
                InstanceView(
                    name=instance.name,
                    kind=instance.kind,
                    address=instance.address,
                    status=instance.status,
                    ports=instance.ports,
                    overlay_path=instance.overlay_path,
                    console_url=console_url,
                )
            )
        return views

    def reconcile(self, kill_orphans: bool = False) -> List[InstanceView]:
        """Bring persisted status in line with the process table after a restart."""
        if kill_orphans:
            self.controller.terminate_all()
        views = self.list_instances()
        for view in views:
            if view.status is InstanceStatus.RUNNING:
                self.controller.allocator.adopt(view.name, view.ports.values())
        log("INFO", f"Reconciled {len(views)} instance(s)")
        return views
