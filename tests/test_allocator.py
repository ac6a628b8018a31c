"""Tests for nodelab.allocator module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from nodelab.allocator import (
    PortAllocator,
    ensure_interface,
    interface_names,
    listening_ports,
)
from nodelab.exceptions import InterfaceSetupFailed, ResourceExhausted
from nodelab.models import Instance, InstanceKind


def _conn(port, status):
    return SimpleNamespace(laddr=SimpleNamespace(ip="0.0.0.0", port=port), status=status)


class TestListeningPorts:
    def test_only_listening_sockets(self):
        connections = [
            _conn(5901, psutil.CONN_LISTEN),
            _conn(40000, psutil.CONN_ESTABLISHED),
            SimpleNamespace(laddr=(), status=psutil.CONN_NONE),
        ]
        with patch("nodelab.allocator.psutil.net_connections", return_value=connections):
            assert listening_ports() == {5901}

    def test_access_denied_falls_back_to_process_scan(self):
        proc = MagicMock()
        proc.net_connections.return_value = [_conn(2223, psutil.CONN_LISTEN)]
        denied = MagicMock()
        denied.net_connections.side_effect = psutil.AccessDenied(pid=1)
        with (
            patch("nodelab.allocator.psutil.net_connections", side_effect=psutil.AccessDenied()),
            patch("nodelab.allocator.psutil.process_iter", return_value=[denied, proc]),
        ):
            assert listening_ports() == {2223}


class TestPortAllocator:
    def test_skips_busy_ports(self):
        allocator = PortAllocator(pool_size=10)
        with patch("nodelab.allocator.listening_ports", return_value={5901, 5902}):
            assert allocator.allocate_port(5900) == 5903

    def test_never_returns_base(self):
        allocator = PortAllocator(pool_size=10)
        with patch("nodelab.allocator.listening_ports", return_value=set()):
            assert allocator.allocate_port(2222) == 2223

    def test_claimed_ports_are_not_handed_out_twice(self):
        allocator = PortAllocator(pool_size=10)
        with patch("nodelab.allocator.listening_ports", return_value=set()):
            first = allocator.allocate_port(5900, owner="node_1")
            second = allocator.allocate_port(5900, owner="node_2")
        assert first == 5901
        assert second == 5902

    def test_exhausted_pool(self):
        allocator = PortAllocator(pool_size=3)
        with patch("nodelab.allocator.listening_ports", return_value={5901, 5902}):
            with pytest.raises(ResourceExhausted, match="5901-5902"):
                allocator.allocate_port(5900)

    def test_confirm_then_release(self):
        allocator = PortAllocator(pool_size=10)
        with patch("nodelab.allocator.listening_ports", return_value=set()):
            allocator.allocate_port(5900, owner="node_1")
            allocator.allocate_port(2222, owner="node_1")
        assert allocator.held_ports("node_1") == []
        assert allocator.confirm("node_1") == [2223, 5901]
        assert allocator.held_ports("node_1") == [2223, 5901]
        assert allocator.release("node_1") == [2223, 5901]
        assert allocator.held_ports("node_1") == []

    def test_released_port_is_reused(self):
        allocator = PortAllocator(pool_size=10)
        with patch("nodelab.allocator.listening_ports", return_value=set()):
            allocator.allocate_port(5900, owner="node_1")
            allocator.release("node_1")
            assert allocator.allocate_port(5900, owner="node_2") == 5901

    def test_claim_exact(self):
        allocator = PortAllocator()
        with patch("nodelab.allocator.listening_ports", return_value=set()):
            assert allocator.claim_exact(5950, "router_1") == 5950
            assert allocator.claim_exact(5950, "router_1") == 5950
            with pytest.raises(ResourceExhausted, match="reserved by router_1"):
                allocator.claim_exact(5950, "router_2")

    def test_claim_exact_bound_elsewhere(self):
        allocator = PortAllocator()
        with patch("nodelab.allocator.listening_ports", return_value={5950}):
            with pytest.raises(ResourceExhausted, match="already bound"):
                allocator.claim_exact(5950, "router_1")

    def test_adopt(self):
        allocator = PortAllocator(pool_size=10)
        allocator.adopt("node_1", [5901, 2223])
        assert allocator.held_ports("node_1") == [2223, 5901]
        with patch("nodelab.allocator.listening_ports", return_value=set()):
            assert allocator.allocate_port(5900) == 5902


class TestInterfaceNames:
    def test_node_single_tap(self):
        node = Instance(name="node_3", kind=InstanceKind.NODE, overlay_path=Path("x"), address="a")
        assert interface_names(node, nic_count=4) == ["tap-node_3"]

    def test_router_one_tap_per_nic(self):
        router = Instance(name="router_1", kind=InstanceKind.ROUTER, overlay_path=Path("x"), address="a")
        assert interface_names(router, nic_count=2) == ["tap-router_1g0", "tap-router_1g1"]


class TestEnsureInterface:
    def test_existing_interface_untouched(self):
        with patch("nodelab.allocator.run", return_value=subprocess.CompletedProcess([], 0)) as mock_run:
            assert ensure_interface("tap-node_1") is False
        mock_run.assert_called_once_with(["ip", "link", "show", "tap-node_1"], check=False, capture_output=True)

    def test_creates_and_brings_up(self):
        calls = []

        def fake_run(cmd, check=True, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 1 if cmd[:3] == ["ip", "link", "show"] else 0)

        with patch("nodelab.allocator.run", side_effect=fake_run):
            assert ensure_interface("tap-node_1", use_sudo=True) is True
        assert calls[1] == ["sudo", "-n", "ip", "tuntap", "add", "dev", "tap-node_1", "mode", "tap"]
        assert calls[2] == ["sudo", "-n", "ip", "link", "set", "tap-node_1", "up"]

    def test_without_sudo(self):
        calls = []

        def fake_run(cmd, check=True, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 1 if cmd[:3] == ["ip", "link", "show"] else 0)

        with patch("nodelab.allocator.run", side_effect=fake_run):
            ensure_interface("tap-node_1", use_sudo=False)
        assert calls[1][0] == "ip"

    def test_creation_failure(self):
        def fake_run(cmd, check=True, **kwargs):
            if cmd[:3] == ["ip", "link", "show"]:
                return subprocess.CompletedProcess(cmd, 1)
            raise subprocess.CalledProcessError(2, cmd, output="", stderr="ioctl(TUNSETIFF): Operation not permitted\n")

        with patch("nodelab.allocator.run", side_effect=fake_run):
            with pytest.raises(InterfaceSetupFailed, match="Operation not permitted"):
                ensure_interface("tap-node_1")

    def test_name_too_long(self):
        with pytest.raises(InterfaceSetupFailed, match="1-15 characters"):
            ensure_interface("tap-router_123g0")

    def test_ip_missing(self):
        with patch("nodelab.allocator.run", side_effect=FileNotFoundError("ip")):
            with pytest.raises(InterfaceSetupFailed, match="not found"):
                ensure_interface("tap-node_1")
