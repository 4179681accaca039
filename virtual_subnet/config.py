"""Site configuration loading and validation."""

from __future__ import annotations

import ipaddress
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import InvalidSiteConfig, InvalidSubnet
from .logging_utils import log_event

AUTO_INTERFACE = "auto"
DEFAULT_MESH_INTERFACE = "tailscale0"
_DEFAULT_CONFIG_PATH = Path("/etc/virtual-subnet/site.json")

# Kernel limit is IFNAMSIZ - 1 bytes.
_MAX_INTERFACE_NAME = 15
_INTERFACE_NAME_PATTERN = re.compile(r"[^\s/:]+")

# JSON keys mirror the NixOS option names.
_FIELD_KEYS = {
    "lan_interface": "lanInterface",
    "local_subnet": "localSubnet",
    "virtual_subnet": "virtualSubnet",
    "mesh_interface": "meshInterface",
    "allow_lan_to_mesh": "allowLanToMesh",
}


@dataclass(frozen=True)
class SiteConfig:
    """Validated translator settings for one site."""

    lan_interface: str
    local_subnet: ipaddress.IPv4Network
    virtual_subnet: ipaddress.IPv4Network
    mesh_interface: str = DEFAULT_MESH_INTERFACE
    allow_lan_to_mesh: bool = False

    @property
    def mode(self) -> str:
        """Return ``gateway`` when LAN hosts may reach the mesh, else ``translator``."""

        return "gateway" if self.allow_lan_to_mesh else "translator"

    def to_payload(self) -> Dict[str, Any]:
        """Return the JSON document form (NixOS option names)."""

        return {
            "lanInterface": self.lan_interface,
            "localSubnet": str(self.local_subnet),
            "virtualSubnet": str(self.virtual_subnet),
            "meshInterface": self.mesh_interface,
            "allowLanToMesh": self.allow_lan_to_mesh,
        }


def default_config_path() -> Path:
    """Return the site file path, honouring ``VIRTUAL_SUBNET_CONFIG``."""

    override = os.environ.get("VIRTUAL_SUBNET_CONFIG")
    if override:
        return Path(override)
    return _DEFAULT_CONFIG_PATH


def parse_subnet(value: Any, *, field: str) -> ipaddress.IPv4Network:
    """Parse ``value`` as an IPv4 CIDR network without host bits."""

    if not isinstance(value, str) or "/" not in value:
        raise InvalidSubnet(
            f"{field} must be CIDR notation, e.g. \"192.168.10.0/24\" (got {value!r})",
            subnet=str(value),
        )
    try:
        network = ipaddress.ip_network(value.strip(), strict=True)
    except ValueError as exc:
        raise InvalidSubnet(f"{field} is not a valid network: {exc}", subnet=value) from exc
    if not isinstance(network, ipaddress.IPv4Network):
        raise InvalidSubnet(f"{field} must be an IPv4 network (got {value})", subnet=value)
    return network


def validate_interface_name(name: Any, *, field: str, allow_auto: bool = False) -> str:
    """Return ``name`` when it is usable as a kernel interface name."""

    if not isinstance(name, str) or not name.strip():
        raise InvalidSiteConfig(f"{field} must be a non-empty interface name")
    name = name.strip()
    if name == AUTO_INTERFACE:
        if allow_auto:
            return name
        raise InvalidSiteConfig(f"{field} cannot be '{AUTO_INTERFACE}'")
    if len(name.encode("utf-8")) > _MAX_INTERFACE_NAME:
        raise InvalidSiteConfig(
            f"{field} '{name}' is longer than {_MAX_INTERFACE_NAME} bytes"
        )
    if name.startswith("-") or not _INTERFACE_NAME_PATTERN.fullmatch(name):
        raise InvalidSiteConfig(f"{field} '{name}' is not a valid interface name")
    return name


def validate_site_config(
    *,
    lan_interface: Any = AUTO_INTERFACE,
    local_subnet: Any,
    virtual_subnet: Any,
    mesh_interface: Any = DEFAULT_MESH_INTERFACE,
    allow_lan_to_mesh: Any = False,
) -> SiteConfig:
    """Return a :class:`SiteConfig` or raise before anything is planned.

    NETMAP keeps the host bits of each address, so both subnets must have
    the same prefix length; a pair with different lengths has no 1:1
    mapping and is rejected.
    """

    lan = validate_interface_name(lan_interface, field="lanInterface", allow_auto=True)
    mesh = validate_interface_name(mesh_interface, field="meshInterface")
    if lan == mesh:
        raise InvalidSiteConfig(
            f"lanInterface and meshInterface must differ (both are '{lan}')"
        )
    if not isinstance(allow_lan_to_mesh, bool):
        raise InvalidSiteConfig(
            f"allowLanToMesh must be a boolean (got {allow_lan_to_mesh!r})"
        )

    local = parse_subnet(local_subnet, field="localSubnet")
    virtual = parse_subnet(virtual_subnet, field="virtualSubnet")
    if local == virtual:
        raise InvalidSubnet(
            f"virtualSubnet must differ from localSubnet (both are {local})",
            subnet=str(virtual),
        )
    if local.prefixlen != virtual.prefixlen:
        raise InvalidSubnet(
            "localSubnet and virtualSubnet must have the same prefix length "
            f"for a 1:1 mapping ({local} vs {virtual})",
            subnet=str(virtual),
        )

    return SiteConfig(
        lan_interface=lan,
        local_subnet=local,
        virtual_subnet=virtual,
        mesh_interface=mesh,
        allow_lan_to_mesh=allow_lan_to_mesh,
    )


def site_config_from_mapping(
    data: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None
) -> SiteConfig:
    """Build a validated config from a JSON document plus CLI ``overrides``.

    ``overrides`` uses the Python field names; ``None`` values are ignored.
    """

    values: Dict[str, Any] = {}
    for field, key in _FIELD_KEYS.items():
        if key in data:
            values[field] = data[key]
    for field, value in (overrides or {}).items():
        if field not in _FIELD_KEYS:
            raise InvalidSiteConfig(f"unknown configuration field: {field}")
        if value is not None:
            values[field] = value

    missing = [
        _FIELD_KEYS[field]
        for field in ("local_subnet", "virtual_subnet")
        if field not in values
    ]
    if missing:
        raise InvalidSiteConfig(f"missing required setting(s): {', '.join(missing)}")
    return validate_site_config(**values)


def load_site_config(
    path: Optional[Path] = None, *, overrides: Optional[Mapping[str, Any]] = None
) -> SiteConfig:
    """Read the site JSON file and return the validated configuration.

    A missing file is tolerated when ``overrides`` supply the required
    subnets, so the CLI can run without the NixOS-generated file.
    """

    config_path = path if path is not None else default_config_path()
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log_event("virtual_subnet.config.file_missing", path=config_path)
        data: Any = {}
    except (OSError, UnicodeDecodeError) as exc:
        log_event("virtual_subnet.config.unreadable", path=config_path, error=str(exc))
        raise InvalidSiteConfig(f"cannot read {config_path}: {exc}") from exc
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidSiteConfig(f"{config_path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidSiteConfig(f"{config_path} must contain a JSON object")

    config = site_config_from_mapping(data, overrides)
    log_event(
        "virtual_subnet.config.loaded",
        path=config_path,
        mode=config.mode,
        **config.to_payload(),
    )
    return config
