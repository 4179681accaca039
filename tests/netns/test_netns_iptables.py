"""Apply and revert real iptables rules inside a network namespace."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

pytestmark = pytest.mark.netns

SITE = {
    "lanInterface": "auto",
    "localSubnet": "192.168.10.0/24",
    "virtualSubnet": "100.64.42.0/24",
    "meshInterface": "tailscale0",
    "allowLanToMesh": False,
}

CLI = '"$VIRTUAL_SUBNET_PYTHON" -m virtual_subnet.cli'


def _write_site(tmp_path: Path, **changes) -> None:
    (tmp_path / "site.json").write_text(json.dumps({**SITE, **changes}))


def _module_rules(shell) -> list[str]:
    lines = []
    for table, chain in (("nat", "PREROUTING"), ("nat", "POSTROUTING"), ("filter", "FORWARD")):
        output = shell.run_checked(f"iptables -w -t {table} -S {chain}")
        lines.extend(line for line in output.splitlines() if line.startswith("-A "))
    return lines


def test_apply_twice_leaves_five_rules(netns_shell, tmp_path):
    _write_site(tmp_path)
    netns_shell.run_checked(f"{CLI} resolve | grep -x enp3s0")

    netns_shell.run_checked(f"{CLI} apply --skip-forwarding-check")
    netns_shell.run_checked(f"{CLI} apply --skip-forwarding-check")

    rules = _module_rules(netns_shell)
    assert len(rules) == 5
    assert "-A FORWARD -i enp3s0 -o tailscale0 -j DROP" in rules
    assert "-A PREROUTING -d 100.64.42.0/24 -i tailscale0 -j NETMAP --to 192.168.10.0/24" in rules

    status, _ = netns_shell.run_status(f"{CLI} status")
    assert status == 0


def test_revert_restores_empty_tables(netns_shell, tmp_path):
    _write_site(tmp_path)
    before = _module_rules(netns_shell)
    netns_shell.run_checked(f"{CLI} apply --skip-forwarding-check")
    netns_shell.run_checked(f"{CLI} revert")
    assert _module_rules(netns_shell) == before
    netns_shell.run_checked(f"{CLI} revert")


def test_mode_switch_replaces_verdict(netns_shell, tmp_path):
    _write_site(tmp_path)
    netns_shell.run_checked(f"{CLI} apply --skip-forwarding-check")
    _write_site(tmp_path, allowLanToMesh=True)
    netns_shell.run_checked(f"{CLI} apply --skip-forwarding-check")
    rules = _module_rules(netns_shell)
    assert len(rules) == 5
    assert "-A FORWARD -i enp3s0 -o tailscale0 -j ACCEPT" in rules
    assert "-A FORWARD -i enp3s0 -o tailscale0 -j DROP" not in rules


def test_missing_interface_fails_before_rules(netns_shell, tmp_path):
    _write_site(tmp_path, lanInterface="eth5")
    status, output = netns_shell.run_status(f"{CLI} apply --skip-forwarding-check")
    assert status == 3
    assert "interface-not-found" in output
    assert _module_rules(netns_shell) == []
