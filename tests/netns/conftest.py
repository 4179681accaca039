"""Fixtures for tests that drive the real iptables in a network namespace."""

from __future__ import annotations

import importlib.util
import os
import shutil
import sys
from pathlib import Path
from typing import Iterator

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]


def _require_executable(executable: str) -> str:
    """Ensure an executable exists in ``PATH`` or skip the invoking test."""

    path = shutil.which(executable)
    if path is None:
        pytest.skip(f"required executable '{executable}' is not available in PATH")
    return path


@pytest.fixture
def netns_shell(tmp_path: Path) -> Iterator["NamespaceShell"]:
    if importlib.util.find_spec("pexpect") is None:  # pragma: no cover - env specific
        pytest.skip("pexpect is required for network namespace tests")
    from tests.netns.controller import NamespaceCommandError, NamespaceShell

    unshare = _require_executable("unshare")
    _require_executable("ip")
    _require_executable("iptables")

    try:
        shell = NamespaceShell.spawn(unshare)
    except Exception as exc:  # pexpect raises several unrelated types here
        pytest.skip(f"cannot start a network namespace shell: {exc}")

    try:
        status, output = shell.run_status("iptables -w -t nat -S")
        if status != 0:
            pytest.skip(f"iptables is not usable inside a user namespace: {output}")
        try:
            shell.run_checked("ip link add enp3s0 type dummy")
            shell.run_checked("ip link add tailscale0 type dummy")
            shell.run_checked("ip addr add 192.168.10.2/24 dev enp3s0")
            shell.run_checked("ip link set enp3s0 up")
            shell.run_checked("ip link set tailscale0 up")
            shell.run_checked("ip route add default via 192.168.10.1 dev enp3s0")
        except NamespaceCommandError as exc:
            pytest.skip(f"cannot build the namespace topology: {exc}")

        shell.export("PYTHONPATH", str(REPO_ROOT))
        shell.export("VIRTUAL_SUBNET_EXEC", "1")
        shell.export("VIRTUAL_SUBNET_LOG_EVENTS", "0")
        shell.export("VIRTUAL_SUBNET_CONFIG", str(tmp_path / "site.json"))
        shell.export("VIRTUAL_SUBNET_PYTHON", sys.executable)
        shell.export("HOME", os.environ.get("HOME", str(tmp_path)))
        yield shell
    finally:
        shell.close()
