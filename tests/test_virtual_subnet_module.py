"""Assertions about the NixOS module wiring for the translator service."""

from __future__ import annotations

import re
from pathlib import Path

MODULE_PATH = Path(__file__).resolve().parents[1] / "modules" / "virtual-subnet.nix"


def _module_text() -> str:
    return MODULE_PATH.read_text(encoding="utf-8")


def _extract_service_block(name: str) -> str:
    module_text = _module_text()
    try:
        start = module_text.index(f"systemd.services.{name} = ")
    except ValueError as exc:  # pragma: no cover - missing block
        raise AssertionError(f"systemd.services.{name} definition missing from module") from exc

    end = module_text.find("\n    };", start)
    if end == -1:
        raise AssertionError(f"systemd.services.{name} block not terminated")

    return module_text[start:end]


def _extract_service_path_packages(name: str) -> set[str]:
    block = _extract_service_block(name)
    match = re.search(r"path\s*=\s*with pkgs;\s*\[(?P<body>[^\]]+)\];", block, re.DOTALL)
    if match is None:
        raise AssertionError(f"systemd.services.{name}.path definition missing")
    return {
        token
        for token in re.findall(r"[A-Za-z0-9_-]+", match.group("body"))
        if token not in {"with", "pkgs"}
    }


def test_nat_service_is_oneshot_with_start_and_stop_hooks() -> None:
    block = _extract_service_block("virtual-subnet-nat")
    assert 'Type = "oneshot";' in block
    assert "RemainAfterExit = true;" in block
    assert 'ExecStart = "${cfg.package}/bin/virtual-subnet apply";' in block
    assert 'ExecStop = "${cfg.package}/bin/virtual-subnet revert";' in block
    assert '"tailscaled.service"' in block
    assert "environment = virtualSubnetServiceEnv;" in block


def test_nat_service_path_includes_runtime_tools() -> None:
    packages = _extract_service_path_packages("virtual-subnet-nat")
    missing = {"iproute2", "iptables"} - packages
    assert not missing, f"virtual-subnet-nat path is missing {sorted(missing)}"


def test_gro_service_path_includes_ethtool() -> None:
    packages = _extract_service_path_packages("virtual-subnet-udp-gro")
    assert {"ethtool", "iproute2"} <= packages


def test_module_enables_execution_and_forwarding() -> None:
    module_text = _module_text()
    assert 'VIRTUAL_SUBNET_EXEC = "1";' in module_text
    assert 'VIRTUAL_SUBNET_CONFIG = "/etc/virtual-subnet/site.json";' in module_text
    assert 'boot.kernel.sysctl."net.ipv4.ip_forward" = true;' in module_text
    assert 'environment.etc."virtual-subnet/site.json".text = builtins.toJSON siteConfig;' in module_text


def test_site_file_keys_match_loader() -> None:
    from virtual_subnet.config import _FIELD_KEYS

    module_text = _module_text()
    for key in _FIELD_KEYS.values():
        assert f"{key} = cfg.{key};" in module_text


def test_module_asserts_mesh_prerequisites() -> None:
    module_text = _module_text()
    assert 'config.services.tailscale.useRoutingFeatures == "both"' in module_text
    assert '"--advertise-routes=${cfg.virtualSubnet}"' in module_text
    assert 'default = "auto";' in module_text
    assert 'default = "tailscale0";' in module_text
