"""NIC tuning for forwarding mesh traffic."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from .logging_utils import log_event
from .resolver import wait_for_default_route

GRO_SETTINGS = ("rx-udp-gro-forwarding", "on", "rx-gro-list", "off")


def gro_command(interface: str) -> List[str]:
    return ["ethtool", "-K", interface, *GRO_SETTINGS]


def tune_udp_gro(interface: str, *, execute: bool = True) -> bool:
    """Enable UDP GRO forwarding on ``interface``.

    Drivers without these offloads make ``ethtool`` fail; that is logged
    and reported as ``False`` rather than raised, since the translator works
    without the tuning.
    """

    cmd = gro_command(interface)
    log_event("virtual_subnet.tuning.command.start", command=cmd, execute=execute)
    if not execute:
        log_event(
            "virtual_subnet.tuning.command.skip",
            command=cmd,
            reason="execution disabled",
        )
        return False

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        log_event("virtual_subnet.tuning.command.failed", command=cmd, error=str(exc))
        return False

    status = "success" if result.returncode == 0 else "error"
    log_event(
        "virtual_subnet.tuning.command.finished",
        command=cmd,
        status=status,
        returncode=result.returncode,
        stderr=(result.stderr or "").strip(),
    )
    return result.returncode == 0


def tune_default_route_interface(
    route_table: Path = Path("/proc/net/route"),
    *,
    attempts: int = 30,
    delay: float = 2.0,
    execute: bool = True,
) -> Optional[str]:
    """Wait for a default route and tune its interface.

    Returns the interface name, or ``None`` when no default route appeared.
    """

    iface = wait_for_default_route(route_table, attempts=attempts, delay=delay)
    if iface is None:
        log_event("virtual_subnet.tuning.skipped", reason="no default route")
        return None
    tune_udp_gro(iface, execute=execute)
    return iface
