"""Host port and TAP interface allocation for nodelab."""

from __future__ import annotations

import subprocess
import threading
from typing import Dict, List, Optional, Set

try:
    import psutil  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("psutil is required but not installed") from exc

from nodelab.constants import MAX_IFNAME_LEN, PORT_POOL_SIZE
from nodelab.exceptions import InterfaceSetupFailed, ResourceExhausted
from nodelab.models import Instance
from nodelab.utils import describe_failure, log, run


def listening_ports() -> Set[int]:
    """Return every local port currently held by a listening socket."""
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        # Unprivileged on some platforms; fall back to our own process tree.
        connections = []
        for proc in psutil.process_iter():
            try:
                connections.extend(proc.net_connections(kind="inet"))
            except (psutil.AccessDenied, psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
    return {
        conn.laddr.port
        for conn in connections
        if conn.laddr and conn.status == psutil.CONN_LISTEN
    }


class PortAllocator:
    """Hands out host ports from bounded pools.

    Probing the listener table alone leaves a window between the probe and
    the hypervisor binding the port. Every port handed to an owner is
    therefore kept in a reservation table until the owner releases it: first
    as a claim while the launch runs, then as a held port once the launch
    is confirmed.
    """

    def __init__(self, pool_size: int = PORT_POOL_SIZE) -> None:
        self.pool_size = pool_size
        self._lock = threading.Lock()
        self._claimed: Dict[int, str] = {}
        self._held: Dict[int, str] = {}

    def _reserved_by(self, port: int) -> Optional[str]:
        return self._claimed.get(port) or self._held.get(port)

    def allocate_port(self, preferred_base: int, owner: Optional[str] = None) -> int:
        with self._lock:
            busy = listening_ports()
            for offset in range(1, self.pool_size):
                port = preferred_base + offset
                if port in busy or self._reserved_by(port) is not None:
                    continue
                if owner is not None:
                    self._claimed[port] = owner
                log("DEBUG", f"Allocated port {port} (base {preferred_base}, owner {owner or '-'})")
                return port
        raise ResourceExhausted(
            f"No free ports available in {preferred_base + 1}-{preferred_base + self.pool_size - 1}"
        )

    def claim_exact(self, port: int, owner: str) -> int:
        with self._lock:
            holder = self._reserved_by(port)
            if holder is not None and holder != owner:
                raise ResourceExhausted(f"Port {port} is reserved by {holder}")
            if holder is None and port in listening_ports():
                raise ResourceExhausted(f"Port {port} is already bound on this host")
            if holder is None:
                self._claimed[port] = owner
            return port

    def confirm(self, owner: str) -> List[int]:
        with self._lock:
            ports = [port for port, holder in self._claimed.items() if holder == owner]
            for port in ports:
                del self._claimed[port]
                self._held[port] = owner
            return sorted(ports)

    def release(self, owner: str) -> List[int]:
        with self._lock:
            released = []
            for table in (self._claimed, self._held):
                for port in [p for p, holder in table.items() if holder == owner]:
                    del table[port]
                    released.append(port)
        if released:
            log("DEBUG", f"Released ports {sorted(released)} held by {owner}")
        return sorted(released)

    def held_ports(self, owner: str) -> List[int]:
        with self._lock:
            return sorted(p for p, holder in self._held.items() if holder == owner)

    def adopt(self, owner: str, ports: List[int]) -> None:
        """Mark ports of an already running instance as held (after a restart)."""
        with self._lock:
            for port in ports:
                self._held[port] = owner


def interface_names(instance: Instance, nic_count: int = 1) -> List[str]:
    if instance.is_router:
        return [f"tap-{instance.name}g{index}" for index in range(nic_count)]
    return [f"tap-{instance.name}"]


def _privileged(cmd: List[str], use_sudo: bool) -> List[str]:
    return ["sudo", "-n", *cmd] if use_sudo else cmd


def ensure_interface(name: str, use_sudo: bool = True) -> bool:
    """Create and bring up a TAP interface unless it already exists.

    Returns True when the interface was created.
    """
    if not name or len(name) > MAX_IFNAME_LEN:
        raise InterfaceSetupFailed(
            f"Interface name '{name}' must be 1-{MAX_IFNAME_LEN} characters long"
        )
    try:
        existing = run(["ip", "link", "show", name], check=False, capture_output=True)
    except FileNotFoundError as exc:
        raise InterfaceSetupFailed("iproute2 'ip' command not found") from exc
    if existing.returncode == 0:
        return False

    log("INFO", f"Creating TAP interface: {name}")
    try:
        run(_privileged(["ip", "tuntap", "add", "dev", name, "mode", "tap"], use_sudo), capture_output=True)
        run(_privileged(["ip", "link", "set", name, "up"], use_sudo), capture_output=True)
    except subprocess.CalledProcessError as exc:
        raise InterfaceSetupFailed(f"Failed to create TAP interface {name}: {describe_failure(exc)}") from exc
    except FileNotFoundError as exc:
        raise InterfaceSetupFailed(f"Failed to create TAP interface {name}: {exc}") from exc
    return True
