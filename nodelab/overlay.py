"""Copy-on-write overlay disks for nodelab instances."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict

from nodelab.constants import OVERLAY_FORMAT, QEMU_IMG
from nodelab.exceptions import OverlayCreateFailed, OverlayError
from nodelab.models import InstanceKind, KindProfile
from nodelab.utils import describe_failure, ensure_directory, log, run


class OverlayStore:
    """Creates, validates and wipes qcow2 overlays backed by per-kind base images."""

    def __init__(self, overlay_dir: Path, profiles: Dict[InstanceKind, KindProfile]) -> None:
        self.overlay_dir = overlay_dir
        self.profiles = profiles
        try:
            ensure_directory(self.overlay_dir)
        except OSError as exc:
            raise OverlayError(f"Cannot create overlay directory {self.overlay_dir}: {exc}") from exc

    def overlay_path(self, name: str) -> Path:
        return self.overlay_dir / f"{name}.{OVERLAY_FORMAT}"

    def base_image(self, kind: InstanceKind) -> Path:
        return self.profiles[kind].base_image

    @staticmethod
    def validate(path: Path) -> bool:
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def create_overlay(self, name: str, kind: InstanceKind) -> Path:
        path = self.overlay_path(name)
        if path.exists():
            if self.validate(path):
                log("DEBUG", f"Overlay for {name} already present at {path}")
                return path
            log("WARN", f"Overlay {path} is empty; recreating")
            self._remove(path)
        self._create(path, kind)
        log("SUCCESS", f"Overlay created for {name}")
        return path

    def wipe_overlay(self, path: Path, kind: InstanceKind) -> Path:
        """Delete the overlay and immediately recreate it empty from the same base."""
        self._remove(path)
        self._create(path, kind)
        log("INFO", f"Overlay {path.name} reset to base image")
        return path

    def _remove(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise OverlayError(f"Failed to delete overlay {path}: {exc}") from exc

    def _create(self, path: Path, kind: InstanceKind) -> None:
        base = self.base_image(kind)
        if not base.is_file():
            raise OverlayCreateFailed(f"Base image for {kind.value} not found: {base}")
        try:
            ensure_directory(path.parent)
        except OSError as exc:
            raise OverlayCreateFailed(f"Cannot create overlay directory {path.parent}: {exc}") from exc
        if not os.access(path.parent, os.W_OK):
            raise OverlayCreateFailed(f"Overlay directory is not writable: {path.parent}")
        cmd = [
            QEMU_IMG,
            "create",
            "-f",
            OVERLAY_FORMAT,
            "-b",
            str(base.resolve()),
            "-F",
            OVERLAY_FORMAT,
            str(path),
        ]
        try:
            run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            path.unlink(missing_ok=True)
            raise OverlayCreateFailed(f"qemu-img failed for {path}: {describe_failure(exc)}") from exc
        except FileNotFoundError as exc:
            raise OverlayCreateFailed(f"{QEMU_IMG} not found: {exc}") from exc
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise OverlayCreateFailed(f"Could not run {QEMU_IMG} for {path}: {exc}") from exc
        if not self.validate(path):
            raise OverlayCreateFailed(f"qemu-img produced no overlay at {path}")
