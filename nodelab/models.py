"""Data models for nodelab."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from nodelab.constants import INVENTORY_NAME


class InstanceKind(str, Enum):
    NODE = "node"
    ROUTER = "router"


class InstanceStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class PortAllocation:
    vnc: Optional[int] = None
    telnet: Optional[int] = None  # routers only
    ssh: Optional[int] = None  # nodes only

    def values(self) -> List[int]:
        return [port for port in (self.vnc, self.telnet, self.ssh) if port is not None]

    def to_dict(self) -> Dict[str, Optional[int]]:
        return asdict(self)


@dataclass
class KindProfile:
    kind: InstanceKind
    base_image: Path
    memory_mb: int = 1024
    nic_model: str = "e1000"
    nic_count: int = 1
    protocol: str = "vnc"


@dataclass
class Instance:
    name: str
    kind: InstanceKind
    overlay_path: Path
    address: str
    status: InstanceStatus = InstanceStatus.STOPPED
    ports: PortAllocation = field(default_factory=PortAllocation)
    connection_id: Optional[int] = None
    pid: Optional[int] = None

    @property
    def is_router(self) -> bool:
        return self.kind is InstanceKind.ROUTER

    def to_record(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "overlay_path": str(self.overlay_path),
            "address": self.address,
            "status": self.status.value,
            "ports": self.ports.to_dict(),
            "connection_id": self.connection_id,
            "pid": self.pid,
        }


@dataclass
class LaunchResult:
    ports: PortAllocation
    pid: Optional[int]


@dataclass
class RunResult:
    name: str
    ports: PortAllocation
    console_url: Optional[str]
    gateway_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "ports": self.ports.to_dict(),
            "console_url": self.console_url,
            "gateway_error": self.gateway_error,
        }


@dataclass
class InstanceView:
    name: str
    kind: InstanceKind
    address: str
    status: InstanceStatus
    ports: PortAllocation
    overlay_path: Path
    console_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "address": self.address,
            "status": self.status.value,
            "ports": self.ports.to_dict(),
            "overlay_path": str(self.overlay_path),
            "console_url": self.console_url,
        }


@dataclass
class WipeAllResult:
    wiped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {"wiped": self.wiped, "failed": self.failed, "skipped": self.skipped}


@dataclass
class LabConfig:
    data_dir: Path
    overlay_dir: Path
    state_dir: Path
    run_dir: Path
    profiles: Dict[InstanceKind, KindProfile]
    qemu_binary: str
    vnc_base_port: int
    ssh_base_port: int
    router_telnet_port: int
    port_pool_size: int
    node_subnet: str
    router_address: str
    use_sudo: bool
    guac_db_url: str
    guac_db_timeout: int
    guacamole_url: str
    guac_target_host: str
    guac_admin: str
    launch_timeout: int
    stop_timeout: int

    @property
    def inventory_path(self) -> Path:
        return self.state_dir / INVENTORY_NAME
