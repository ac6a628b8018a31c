"""Shared test fixtures: temporary lab layout, in-memory Guacamole schema, fake hypervisor."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from nodelab.allocator import PortAllocator
from nodelab.exceptions import AlreadyRunning, ProcessLaunchFailed
from nodelab.gateway import GuacamoleGateway
from nodelab.models import InstanceKind, KindProfile, LabConfig, LaunchResult, PortAllocation
from nodelab.orchestrator import LabOrchestrator
from nodelab.overlay import OverlayStore
from nodelab.registry import NodeRegistry

GUAC_SCHEMA = [
    """
    CREATE TABLE guacamole_entity (
        entity_id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(128) NOT NULL,
        type VARCHAR(16) NOT NULL
    )
    """,
    """
    CREATE TABLE guacamole_connection (
        connection_id INTEGER PRIMARY KEY AUTOINCREMENT,
        connection_name VARCHAR(128) NOT NULL,
        parent_id INTEGER,
        protocol VARCHAR(32) NOT NULL,
        max_connections INTEGER,
        max_connections_per_user INTEGER
    )
    """,
    """
    CREATE TABLE guacamole_connection_parameter (
        connection_id INTEGER NOT NULL,
        parameter_name VARCHAR(128) NOT NULL,
        parameter_value VARCHAR(4096) NOT NULL,
        PRIMARY KEY (connection_id, parameter_name)
    )
    """,
    """
    CREATE TABLE guacamole_connection_permission (
        entity_id INTEGER NOT NULL,
        connection_id INTEGER NOT NULL,
        permission VARCHAR(16) NOT NULL,
        PRIMARY KEY (entity_id, connection_id, permission)
    )
    """,
]


@pytest.fixture
def lab_config(tmp_path) -> LabConfig:
    """LabConfig rooted in tmp_path with real (dummy) base images on disk."""
    images = tmp_path / "images"
    images.mkdir()
    node_image = images / "base.qcow2"
    router_image = images / "router.qcow2"
    node_image.write_bytes(b"QFI\xfb node base")
    router_image.write_bytes(b"QFI\xfb router base")
    return LabConfig(
        data_dir=tmp_path,
        overlay_dir=tmp_path / "overlays",
        state_dir=tmp_path / "state",
        run_dir=tmp_path / "run",
        profiles={
            InstanceKind.NODE: KindProfile(kind=InstanceKind.NODE, base_image=node_image),
            InstanceKind.ROUTER: KindProfile(
                kind=InstanceKind.ROUTER,
                base_image=router_image,
                nic_count=2,
                protocol="telnet",
            ),
        },
        qemu_binary="qemu-system-x86_64",
        vnc_base_port=5900,
        ssh_base_port=2222,
        router_telnet_port=5950,
        port_pool_size=100,
        node_subnet="192.168.56",
        router_address="192.168.56.1",
        use_sudo=False,
        guac_db_url="sqlite://",
        guac_db_timeout=5,
        guacamole_url="http://guac.test/guacamole",
        guac_target_host="172.19.0.1",
        guac_admin="guacadmin",
        launch_timeout=5,
        stop_timeout=1,
    )


@pytest.fixture
def guac_engine():
    """In-memory database carrying the Guacamole tables this project touches."""
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    with engine.begin() as conn:
        for statement in GUAC_SCHEMA:
            conn.execute(text(statement))
        conn.execute(text("INSERT INTO guacamole_entity (name, type) VALUES ('guacadmin', 'USER')"))
    yield engine
    engine.dispose()


@pytest.fixture
def gateway(guac_engine) -> GuacamoleGateway:
    return GuacamoleGateway("sqlite://", base_url="http://guac.test/guacamole", engine=guac_engine)


def fake_qemu_img(cmd, **kwargs):
    """Stand-in for ``qemu-img create``: write a non-empty overlay at the target path."""
    Path(cmd[-1]).write_bytes(b"QFI\xfb overlay")
    return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def overlays(lab_config, monkeypatch) -> OverlayStore:
    monkeypatch.setattr("nodelab.overlay.run", fake_qemu_img)
    return OverlayStore(lab_config.overlay_dir, lab_config.profiles)


class FakeController:
    """In-memory process table with the ProcessController interface."""

    def __init__(self, config: LabConfig, allocator: PortAllocator) -> None:
        self.cfg = config
        self.allocator = allocator
        self.processes = {}
        self.launches = []
        self.fail_on = set()

    def start(self, instance) -> LaunchResult:
        name = instance.name
        if name in self.processes:
            raise AlreadyRunning(f"{name} is already running")
        if name in self.fail_on:
            raise ProcessLaunchFailed(f"Failed to start {name}: boom")
        ports = PortAllocation(vnc=self.allocator.allocate_port(self.cfg.vnc_base_port, owner=name))
        if instance.is_router:
            ports.telnet = self.allocator.claim_exact(self.cfg.router_telnet_port, name)
        else:
            ports.ssh = self.allocator.allocate_port(self.cfg.ssh_base_port, owner=name)
        self.allocator.confirm(name)
        pid = 4000 + len(self.launches)
        self.launches.append(name)
        self.processes[name] = pid
        return LaunchResult(ports=ports, pid=pid)

    def stop(self, name, strict=False) -> bool:
        pid = self.processes.pop(name, None)
        self.allocator.release(name)
        return pid is not None

    def is_running(self, name) -> bool:
        return name in self.processes

    def terminate_all(self):
        names = sorted(self.processes)
        for name in names:
            self.stop(name)
        return names


@pytest.fixture
def allocator(monkeypatch) -> PortAllocator:
    monkeypatch.setattr("nodelab.allocator.listening_ports", lambda: set())
    return PortAllocator(pool_size=100)


@pytest.fixture
def controller(lab_config, allocator) -> FakeController:
    return FakeController(lab_config, allocator)


@pytest.fixture
def orchestrator(lab_config, overlays, controller, gateway) -> LabOrchestrator:
    registry = NodeRegistry(lab_config.inventory_path)
    return LabOrchestrator(
        lab_config,
        registry=registry,
        overlays=overlays,
        controller=controller,
        gateway=gateway,
    )
