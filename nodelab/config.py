"""Configuration loading and environment variable parsing for nodelab."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from nodelab.constants import (
    DATA_DIR,
    DEFAULT_KIND_PROFILES,
    GUAC_ADMIN,
    GUAC_DB_TIMEOUT,
    GUAC_DB_URL,
    GUAC_PROTOCOL_PARAMS,
    GUAC_TARGET_HOST,
    GUACAMOLE_URL,
    KIND_PROTOCOLS,
    LAUNCH_TIMEOUT,
    NODE_SUBNET,
    PORT_POOL_SIZE,
    QEMU_BINARY,
    ROUTER_ADDRESS,
    ROUTER_TELNET_PORT,
    SSH_BASE_PORT,
    STOP_TIMEOUT,
    VNC_BASE_PORT,
    VNC_DISPLAY_OFFSET,
)
from nodelab.exceptions import ManagerError
from nodelab.models import InstanceKind, KindProfile, LabConfig
from nodelab.utils import get_env, get_env_bool, log, parse_int_env

_BASE_IMAGE_ENV = {
    InstanceKind.NODE: ("NODE_BASE_IMAGE", "base.qcow2"),
    InstanceKind.ROUTER: ("ROUTER_BASE_IMAGE", "router.qcow2"),
}


def load_kind_profiles(data_dir: Path, config_path: Optional[Path] = None) -> Dict[InstanceKind, KindProfile]:
    """Build the per-kind profiles, applying overrides from an optional YAML file.

    The file has the shape::

        kinds:
          node:
            memory_mb: 2048
          router:
            base_image: /srv/images/vyos.qcow2
    """
    overrides: Dict[str, dict] = {}
    if config_path is not None:
        if not config_path.exists():
            raise ManagerError(f"Kind profile config missing: {config_path}")
        try:
            data = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ManagerError(f"Kind profile config contains invalid YAML: {exc}")
        if not isinstance(data, dict):
            raise ManagerError(f"Kind profile config must be a mapping (got {type(data).__name__})")
        overrides = data.get("kinds") or {}
        unknown = sorted(set(overrides) - {kind.value for kind in InstanceKind})
        if unknown:
            raise ManagerError(f"Unknown kinds in {config_path}: {', '.join(unknown)}")

    profiles: Dict[InstanceKind, KindProfile] = {}
    for kind in InstanceKind:
        settings = dict(DEFAULT_KIND_PROFILES[kind.value])
        settings.update(overrides.get(kind.value) or {})

        env_name, default_file = _BASE_IMAGE_ENV[kind]
        image_env = (get_env(env_name) or "").strip()
        if image_env:
            base_image = Path(image_env)
        elif settings.get("base_image"):
            base_image = Path(settings["base_image"])
        else:
            base_image = data_dir / "images" / default_file

        protocol = str(settings.get("protocol", "vnc")).lower()
        if protocol not in GUAC_PROTOCOL_PARAMS:
            supported = ", ".join(sorted(GUAC_PROTOCOL_PARAMS))
            raise ManagerError(f"Unsupported console protocol '{protocol}' for {kind.value}. Supported: {supported}")
        if protocol != KIND_PROTOCOLS[kind.value]:
            raise ManagerError(
                f"{kind.value} consoles use {KIND_PROTOCOLS[kind.value]}; protocol '{protocol}' is not available for this kind"
            )
        try:
            memory_mb = int(settings.get("memory_mb", 1024))
            nic_count = int(settings.get("nic_count", 1))
        except (TypeError, ValueError):
            raise ManagerError(f"memory_mb and nic_count for {kind.value} must be integers")
        if memory_mb < 128:
            raise ManagerError(f"memory_mb for {kind.value} must be >= 128 (got {memory_mb})")
        if nic_count < 1:
            raise ManagerError(f"nic_count for {kind.value} must be >= 1 (got {nic_count})")

        profiles[kind] = KindProfile(
            kind=kind,
            base_image=base_image,
            memory_mb=memory_mb,
            nic_model=str(settings.get("nic_model", "e1000")),
            nic_count=nic_count,
            protocol=protocol,
        )
    return profiles


def parse_env() -> LabConfig:
    data_dir_env = (get_env("DATA_DIR") or "").strip()
    data_dir = Path(data_dir_env) if data_dir_env else DATA_DIR

    profiles_env = (get_env("KIND_PROFILES") or "").strip()
    profiles = load_kind_profiles(data_dir, Path(profiles_env) if profiles_env else None)

    vnc_base_port = parse_int_env("VNC_BASE_PORT", str(VNC_BASE_PORT), min_val=VNC_DISPLAY_OFFSET, max_val=65535)
    ssh_base_port = parse_int_env("SSH_BASE_PORT", str(SSH_BASE_PORT), min_val=1, max_val=65535)
    router_telnet_port = parse_int_env("ROUTER_TELNET_PORT", str(ROUTER_TELNET_PORT), min_val=1, max_val=65535)
    port_pool_size = parse_int_env("PORT_POOL_SIZE", str(PORT_POOL_SIZE), min_val=2, max_val=1000)
    for name, base in (("VNC_BASE_PORT", vnc_base_port), ("SSH_BASE_PORT", ssh_base_port)):
        if base + port_pool_size - 1 > 65535:
            raise ManagerError(f"{name}={base} with PORT_POOL_SIZE={port_pool_size} exceeds port 65535")

    node_subnet = (get_env("NODE_SUBNET", NODE_SUBNET) or NODE_SUBNET).strip().rstrip(".")
    octets = node_subnet.split(".")
    if len(octets) != 3 or not all(o.isdigit() and 0 <= int(o) <= 255 for o in octets):
        raise ManagerError(f"NODE_SUBNET must be the first three octets of an IPv4 /24 (got '{node_subnet}')")

    guac_db_url = (get_env("GUAC_DB_URL") or GUAC_DB_URL).strip()
    if "://" not in guac_db_url:
        raise ManagerError(f"GUAC_DB_URL must be a SQLAlchemy database URL (got '{guac_db_url}')")

    use_sudo = get_env_bool("USE_SUDO", True)
    if not use_sudo:
        log("DEBUG", "USE_SUDO disabled; interface commands run without sudo")

    return LabConfig(
        data_dir=data_dir,
        overlay_dir=data_dir / "overlays",
        state_dir=data_dir / "state",
        run_dir=data_dir / "run",
        profiles=profiles,
        qemu_binary=(get_env("QEMU_BINARY") or QEMU_BINARY).strip(),
        vnc_base_port=vnc_base_port,
        ssh_base_port=ssh_base_port,
        router_telnet_port=router_telnet_port,
        port_pool_size=port_pool_size,
        node_subnet=node_subnet,
        router_address=(get_env("ROUTER_ADDRESS") or ROUTER_ADDRESS).strip(),
        use_sudo=use_sudo,
        guac_db_url=guac_db_url,
        guac_db_timeout=parse_int_env("GUAC_DB_TIMEOUT", str(GUAC_DB_TIMEOUT), min_val=1),
        guacamole_url=(get_env("GUACAMOLE_URL") or GUACAMOLE_URL).strip().rstrip("/"),
        guac_target_host=(get_env("GUAC_TARGET_HOST") or GUAC_TARGET_HOST).strip(),
        guac_admin=(get_env("GUAC_ADMIN") or GUAC_ADMIN).strip(),
        launch_timeout=parse_int_env("LAUNCH_TIMEOUT", str(LAUNCH_TIMEOUT), min_val=1),
        stop_timeout=parse_int_env("STOP_TIMEOUT", str(STOP_TIMEOUT), min_val=1),
    )
