#!/usr/bin/env python3
"""Apply a site's rules inside a throwaway network namespace and print them."""
from __future__ import annotations

import argparse
import json
import shutil
import sys
import tempfile
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tests.netns.controller import NamespaceShell


def ensure_executable(name: str) -> Path:
    path = shutil.which(name)
    if path is None:
        raise RuntimeError(f"Required executable '{name}' not found in PATH")
    return Path(path)


def build_topology(shell: NamespaceShell, lan: str, mesh: str, gateway: str) -> None:
    shell.run_checked(f"ip link add {lan} type dummy")
    shell.run_checked(f"ip link add {mesh} type dummy")
    shell.run_checked(f"ip addr add {gateway} dev {lan}")
    shell.run_checked(f"ip link set {lan} up")
    shell.run_checked(f"ip link set {mesh} up")
    gateway_ip = gateway.split("/", 1)[0]
    shell.run_checked(f"ip route add default via {gateway_ip} dev {lan} onlink")


def dump_rules(shell: NamespaceShell) -> str:
    sections = []
    for table in ("nat", "filter"):
        sections.append(f"# table {table}")
        sections.append(shell.run_checked(f"iptables -w -t {table} -S"))
    return "\n".join(sections)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--local-subnet", default="192.168.10.0/24")
    parser.add_argument("--virtual-subnet", default="100.64.42.0/24")
    parser.add_argument("--lan-interface", default="enp3s0")
    parser.add_argument("--mesh-interface", default="tailscale0")
    parser.add_argument(
        "--address",
        default="192.168.10.2/24",
        help="Address given to the LAN interface inside the namespace",
    )
    parser.add_argument("--allow-lan-to-mesh", action="store_true")
    parser.add_argument(
        "--keep",
        action="store_true",
        help="Skip the revert step so the dump shows the applied state last",
    )
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    unshare = ensure_executable("unshare")
    ensure_executable("iptables")

    with tempfile.TemporaryDirectory(prefix="virtual-subnet-netns-") as tmp_dir:
        site_path = Path(tmp_dir) / "site.json"
        site_path.write_text(
            json.dumps(
                {
                    "lanInterface": "auto",
                    "localSubnet": args.local_subnet,
                    "virtualSubnet": args.virtual_subnet,
                    "meshInterface": args.mesh_interface,
                    "allowLanToMesh": args.allow_lan_to_mesh,
                }
            ),
            encoding="utf-8",
        )

        shell = NamespaceShell.spawn(str(unshare))
        try:
            build_topology(shell, args.lan_interface, args.mesh_interface, args.address)
            shell.export("PYTHONPATH", str(REPO_ROOT))
            shell.export("VIRTUAL_SUBNET_EXEC", "1")
            shell.export("VIRTUAL_SUBNET_CONFIG", str(site_path))
            cli = f"{sys.executable} -m virtual_subnet.cli"

            print(shell.run_checked(f"{cli} apply --skip-forwarding-check"))
            print(dump_rules(shell))
            if not args.keep:
                print(shell.run_checked(f"{cli} revert"))
                print(dump_rules(shell))
        finally:
            shell.close()
