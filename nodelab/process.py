"""Hypervisor process control for nodelab instances."""

from __future__ import annotations

import fcntl
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

try:
    import psutil  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("psutil is required but not installed") from exc

from nodelab.allocator import PortAllocator, ensure_interface, interface_names
from nodelab.constants import INSTANCE_NAME_RE, VNC_DISPLAY_OFFSET
from nodelab.exceptions import (
    AlreadyRunning,
    AlreadyStopped,
    ManagerError,
    OverlayMissing,
    ProcessLaunchFailed,
)
from nodelab.models import Instance, KindProfile, LabConfig, LaunchResult, PortAllocation
from nodelab.utils import describe_failure, ensure_directory, kvm_available, log, run


def instance_name_of(cmdline: List[str]) -> Optional[str]:
    """Return the value passed to ``-name`` on a QEMU command line."""
    for index, token in enumerate(cmdline[:-1]):
        if token == "-name":
            value = cmdline[index + 1]
            # -name guest=foo,debug-threads=on
            if value.startswith("guest="):
                value = value[len("guest="):]
            return value.split(",", 1)[0]
    return None


class ProcessController:
    """Launches, probes and terminates the QEMU process behind each instance.

    Liveness is resolved from a handle table filled at launch time, backed by
    a pidfile per instance so handles survive a manager restart. Scanning the
    process table is the last resort and compares the ``-name`` argument
    exactly, so ``node_1`` never matches ``node_10``.
    """

    def __init__(self, config: LabConfig, allocator: PortAllocator) -> None:
        self.cfg = config
        self.allocator = allocator
        self._handles: Dict[str, int] = {}
        self._kvm_available = kvm_available()
        try:
            ensure_directory(self.cfg.run_dir)
        except OSError as exc:
            raise ManagerError(f"Cannot create run directory {self.cfg.run_dir}: {exc}") from exc

    def pidfile(self, name: str) -> Path:
        return self.cfg.run_dir / f"{name}.pid"

    def profile(self, instance: Instance) -> KindProfile:
        return self.cfg.profiles[instance.kind]

    # -- lookup -----------------------------------------------------------

    def _probe(self, pid: int, name: str) -> bool:
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            return instance_name_of(proc.cmdline()) == name
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # Cannot read the command line; trust the recorded handle.
            return psutil.pid_exists(pid)

    def _read_pidfile(self, name: str) -> Optional[int]:
        path = self.pidfile(name)
        try:
            return int(path.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            log("WARN", f"Ignoring unreadable pidfile {path}")
            return None

    def _pidfile_held(self, path: Path) -> bool:
        """True when another process still holds the QEMU lock on ``path``."""
        try:
            handle = open(path, "r+")
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ProcessLaunchFailed(f"Cannot inspect pidfile {path}: {exc}") from exc
        with handle:
            try:
                fcntl.lockf(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                return True
            fcntl.lockf(handle, fcntl.LOCK_UN)
        return False

    def _scan(self, name: str) -> Optional[int]:
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if instance_name_of(cmdline) == name:
                return proc.info["pid"]
        return None

    def find_pid(self, name: str) -> Optional[int]:
        for candidate in (self._handles.get(name), self._read_pidfile(name)):
            if candidate is not None and self._probe(candidate, name):
                self._handles[name] = candidate
                return candidate
        pid = self._scan(name)
        if pid is not None:
            log("DEBUG", f"Found {name} by process scan (PID {pid})")
            self._handles[name] = pid
            return pid
        self._forget(name)
        return None

    def is_running(self, name: str) -> bool:
        return self.find_pid(name) is not None

    def _forget(self, name: str) -> None:
        self._handles.pop(name, None)
        self.pidfile(name).unlink(missing_ok=True)

    # -- launch -----------------------------------------------------------

    def _allocate(self, instance: Instance) -> PortAllocation:
        ports = PortAllocation()
        ports.vnc = self.allocator.allocate_port(self.cfg.vnc_base_port, owner=instance.name)
        if instance.is_router:
            ports.telnet = self.allocator.claim_exact(self.cfg.router_telnet_port, instance.name)
        else:
            ports.ssh = self.allocator.allocate_port(self.cfg.ssh_base_port, owner=instance.name)
        return ports

    def build_command(self, instance: Instance, ports: PortAllocation, pidfile: Path) -> List[str]:
        profile = self.profile(instance)
        if ports.vnc is None or ports.vnc < VNC_DISPLAY_OFFSET:
            raise ManagerError(f"VNC port for {instance.name} must be >= {VNC_DISPLAY_OFFSET} (got {ports.vnc})")
        cmd = [
            self.cfg.qemu_binary,
            "-name",
            instance.name,
            "-drive",
            f"file={instance.overlay_path},format=qcow2,if=ide",
            "-m",
            str(profile.memory_mb),
        ]
        if self._kvm_available:
            cmd.extend(["-enable-kvm", "-cpu", "host"])
        else:
            cmd.extend(["-cpu", "max"])

        for index, tap in enumerate(interface_names(instance, profile.nic_count)):
            cmd.extend(
                [
                    "-netdev",
                    f"tap,id=net{index},ifname={tap},script=no,downscript=no",
                    "-device",
                    f"{profile.nic_model},netdev=net{index}",
                ]
            )
        if ports.ssh is not None:
            cmd.extend(
                [
                    "-netdev",
                    f"user,id=mgmt0,hostfwd=tcp::{ports.ssh}-:22",
                    "-device",
                    f"{profile.nic_model},netdev=mgmt0",
                ]
            )

        cmd.extend(["-vnc", f":{ports.vnc - VNC_DISPLAY_OFFSET}"])
        if ports.telnet is not None:
            cmd.extend(["-serial", f"telnet:0.0.0.0:{ports.telnet},server,nowait"])
        cmd.extend(["-daemonize", "-pidfile", str(pidfile)])
        return cmd

    def start(self, instance: Instance) -> LaunchResult:
        name = instance.name
        if self.is_running(name):
            raise AlreadyRunning(f"{name} is already running (PID {self._handles.get(name)})")
        if not instance.overlay_path.is_file():
            raise OverlayMissing(f"Overlay not found: {instance.overlay_path}")

        profile = self.profile(instance)
        pidfile = self.pidfile(name)
        if self._pidfile_held(pidfile):
            raise AlreadyRunning(f"{name} is already running (pidfile {pidfile} is locked)")
        try:
            pidfile.unlink(missing_ok=True)
        except OSError as exc:
            raise ProcessLaunchFailed(f"Cannot remove stale pidfile {pidfile}: {exc}") from exc
        try:
            ports = self._allocate(instance)
            for tap in interface_names(instance, profile.nic_count):
                ensure_interface(tap, use_sudo=self.cfg.use_sudo)
            cmd = self.build_command(instance, ports, pidfile)
            label = "router" if instance.is_router else "node"
            log("INFO", f"Launching {label} {name} (VNC {ports.vnc})")
            try:
                run(cmd, capture_output=True, timeout=self.cfg.launch_timeout)
            except subprocess.CalledProcessError as exc:
                raise ProcessLaunchFailed(f"Failed to start {name}: {describe_failure(exc)}") from exc
            except subprocess.TimeoutExpired as exc:
                raise ProcessLaunchFailed(
                    f"Failed to start {name}: hypervisor did not daemonize within {self.cfg.launch_timeout}s"
                ) from exc
            except OSError as exc:
                raise ProcessLaunchFailed(f"Failed to start {name}: {exc}") from exc
        except Exception:
            self.allocator.release(name)
            raise

        self.allocator.confirm(name)
        pid = self._read_pidfile(name)
        if pid is None:
            pid = self._scan(name)
            if pid is None:
                log("WARN", f"{name} launched but no PID was recorded")
        if pid is not None:
            self._handles[name] = pid
        log("SUCCESS", f"{name} started (PID {pid if pid is not None else 'unknown'})")
        return LaunchResult(ports=ports, pid=pid)

    # -- termination ------------------------------------------------------

    def stop(self, name: str, strict: bool = False) -> bool:
        pid = self.find_pid(name)
        if pid is None:
            self.allocator.release(name)
            if strict:
                raise AlreadyStopped(f"{name} is not running")
            log("INFO", f"No active process found for {name}. Already stopped.")
            return False

        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=self.cfg.stop_timeout)
            except psutil.TimeoutExpired:
                log("WARN", f"{name} ignored SIGTERM for {self.cfg.stop_timeout}s; sending SIGKILL")
                proc.kill()
                proc.wait(timeout=self.cfg.stop_timeout)
        except psutil.NoSuchProcess:
            log("DEBUG", f"{name} (PID {pid}) exited before it could be signalled")
        except (psutil.AccessDenied, psutil.TimeoutExpired) as exc:
            raise ManagerError(f"Failed to stop {name} (PID {pid}): {exc}") from exc

        self._forget(name)
        self.allocator.release(name)
        log("SUCCESS", f"{name} stopped")
        return True

    def terminate_all(self) -> List[str]:
        """Stop every hypervisor process that carries an instance name."""
        names = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            name = instance_name_of(proc.info.get("cmdline") or [])
            if name and INSTANCE_NAME_RE.match(name):
                names.append(name)
        stopped = [name for name in sorted(set(names)) if self.stop(name)]
        if stopped:
            log("INFO", f"Cleaned up leftover hypervisor processes: {', '.join(stopped)}")
        return stopped
