"""LAN interface resolution."""

from __future__ import annotations

import json
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from .config import AUTO_INTERFACE
from .errors import InterfaceNotFound, NoDefaultRoute
from .logging_utils import log_event

_NET_PATH = Path("/sys/class/net")
_ROUTE_TABLE = Path("/proc/net/route")
_RTF_UP = 0x1


def available_interfaces(net_path: Path = _NET_PATH) -> List[str]:
    """Return the sorted interface names present under ``net_path``."""

    try:
        return sorted(entry.name for entry in net_path.iterdir())
    except FileNotFoundError:
        return []


def interface_exists(name: str, net_path: Path = _NET_PATH) -> bool:
    """Return ``True`` when ``name`` is a live interface."""

    return (net_path / name).exists()


def _default_route_from_ip() -> Optional[str]:
    """Return the default-route device reported by ``ip -j -4 route``."""

    try:
        result = subprocess.run(
            ["ip", "-j", "-4", "route", "show", "default"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, OSError) as exc:
        log_event("virtual_subnet.resolver.ip_route.failed", error=str(exc))
        return None

    try:
        payload = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        log_event("virtual_subnet.resolver.ip_route.malformed", output=result.stdout)
        return None

    if not isinstance(payload, list):
        return None

    for entry in payload:
        if not isinstance(entry, dict):
            continue
        if entry.get("dst") not in ("default", "0.0.0.0/0"):
            continue
        dev = entry.get("dev")
        if isinstance(dev, str) and dev:
            return dev
    return None


def _default_route_from_proc(route_table: Path = _ROUTE_TABLE) -> Optional[str]:
    """Return the first up default route in ``/proc/net/route``.

    Columns are ``Iface Destination Gateway Flags RefCnt Use Metric Mask ...``
    with addresses and flags in hexadecimal.
    """

    try:
        lines = route_table.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None

    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 8:
            continue
        iface, destination, flags, mask = fields[0], fields[1], fields[3], fields[7]
        try:
            if int(destination, 16) != 0 or int(mask, 16) != 0:
                continue
            if not int(flags, 16) & _RTF_UP:
                continue
        except ValueError:
            continue
        return iface
    return None


def default_route_interface(route_table: Path = _ROUTE_TABLE) -> Optional[str]:
    """Return the interface carrying the IPv4 default route, if any.

    ``ip`` is asked first; when it is missing or unusable the kernel routing
    table under ``/proc`` is read directly.
    """

    iface = _default_route_from_ip()
    source = "ip"
    if iface is None:
        iface = _default_route_from_proc(route_table)
        source = "procfs"
    if iface is not None:
        log_event(
            "virtual_subnet.resolver.default_route.detected",
            interface=iface,
            source=source,
        )
    return iface


def wait_for_default_route(
    route_table: Path = _ROUTE_TABLE,
    *,
    attempts: int = 30,
    delay: float = 2.0,
) -> Optional[str]:
    """Poll for a default route and return its interface when one appears."""

    log_event(
        "virtual_subnet.resolver.wait_for_default_route.start",
        attempts=attempts,
        delay_seconds=delay,
    )
    for attempt in range(attempts):
        iface = default_route_interface(route_table)
        if iface is not None:
            return iface
        if attempt + 1 < attempts:
            time.sleep(delay)
    log_event(
        "virtual_subnet.resolver.wait_for_default_route.timeout",
        attempts=attempts,
        delay_seconds=delay,
    )
    return None


def resolve_interface(
    selector: str,
    *,
    net_path: Path = _NET_PATH,
    route_table: Path = _ROUTE_TABLE,
) -> str:
    """Resolve ``selector`` to a live LAN interface name.

    Args:
        selector: Literal interface name, or ``"auto"`` for the interface
            that currently owns the default route.
        net_path: Path to ``/sys/class/net`` (overridable for tests).
        route_table: Path to ``/proc/net/route`` (overridable for tests).

    Raises:
        NoDefaultRoute: ``selector`` is ``"auto"`` and no default route exists.
        InterfaceNotFound: the resulting interface is not present.
    """

    log_event("virtual_subnet.resolver.resolve.start", selector=selector)
    if selector == AUTO_INTERFACE:
        iface = default_route_interface(route_table)
        if iface is None:
            log_event("virtual_subnet.resolver.resolve.no_default_route")
            raise NoDefaultRoute()
    else:
        iface = selector

    if not interface_exists(iface, net_path):
        available = available_interfaces(net_path)
        log_event(
            "virtual_subnet.resolver.resolve.not_found",
            interface=iface,
            available=available,
        )
        raise InterfaceNotFound(iface, available)

    log_event("virtual_subnet.resolver.resolve.finished", selector=selector, interface=iface)
    return iface
