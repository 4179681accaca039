"""JSON event log for the translator.

Every step that touches the host (resolving the LAN interface, running
``iptables`` or ``ethtool``, writing the forwarding sysctl) reports a dotted
event such as ``virtual_subnet.engine.command.finished``.  The second
segment becomes the ``component`` field so journal queries can select one
layer without parsing event names.
"""

from __future__ import annotations

import datetime as _dt
import ipaddress
import json
import os
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

_DEFAULT_LOG_FILE = Path("/var/log/virtual-subnet/actions.log")
_EVENT_PREFIX = "virtual_subnet."


def _serialise(value: Any) -> Any:
    """Return a JSON-friendly representation of *value*.

    Rules log as the line ``iptables -S`` would print for them and other
    plan objects through their ``to_payload`` form.
    """

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (Path, ipaddress.IPv4Network, ipaddress.IPv4Address)):
        return str(value)
    listing = getattr(value, "listing", None)
    if callable(listing):
        return listing()
    to_payload = getattr(value, "to_payload", None)
    if callable(to_payload):
        return _serialise(to_payload())
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def _component(event: str) -> Optional[str]:
    """Return ``engine`` for ``virtual_subnet.engine.command.start``."""

    if not event.startswith(_EVENT_PREFIX):
        return None
    return event[len(_EVENT_PREFIX):].split(".", 1)[0] or None


def _logs_enabled() -> bool:
    value = os.environ.get("VIRTUAL_SUBNET_LOG_EVENTS")
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "no"}


def log_event(event: str, **fields: Any) -> None:
    """Write one event to ``stderr`` and the action log when enabled.

    The systemd units set ``VIRTUAL_SUBNET_LOG_EVENTS`` so apply, revert and
    GRO tuning land in the journal; interactive runs stay quiet by default.
    """

    if not _logs_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
    }
    component = _component(event)
    if component is not None:
        record["component"] = component
    for key, value in fields.items():
        record[str(key)] = _serialise(value)

    message = json.dumps(record, sort_keys=True)

    sys.stderr.write(message + "\n")
    sys.stderr.flush()
    _append_to_log_file(message)


def _log_file_path() -> Path:
    """Return ``VIRTUAL_SUBNET_LOG_FILE``, or the default when unset or blank."""

    value = os.environ.get("VIRTUAL_SUBNET_LOG_FILE")
    if value is None or value.strip() == "":
        return _DEFAULT_LOG_FILE
    return Path(value)


def _append_to_log_file(message: str) -> None:
    log_file = _log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(message + "\n")
    except OSError as exc:  # pragma: no cover - unwritable log directory
        sys.stderr.write(f"virtual-subnet: failed to write log to {log_file}: {exc}\n")
        sys.stderr.flush()
