"""CLI entry point for virtual-subnet."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__, applier, config, planner, tuning
from .engine import DryRunEngine, IptablesEngine
from .errors import (
    ForwardingDisabled,
    InterfaceNotFound,
    InvalidSiteConfig,
    NoDefaultRoute,
    RuleApplyFailed,
    RuleEngineUnavailable,
    TranslatorError,
)
from .logging_utils import log_event

EXIT_CONFIG = 2
EXIT_INTERFACE = 3
EXIT_ENGINE = 4
EXIT_FORWARDING = 5

_EXIT_CODES = (
    (InvalidSiteConfig, EXIT_CONFIG),
    ((InterfaceNotFound, NoDefaultRoute), EXIT_INTERFACE),
    ((RuleEngineUnavailable, RuleApplyFailed), EXIT_ENGINE),
    (ForwardingDisabled, EXIT_FORWARDING),
)


def _execution_enabled(args: argparse.Namespace) -> bool:
    """Return ``True`` when commands may modify the running kernel."""

    return not args.dry_run and os.environ.get("VIRTUAL_SUBNET_EXEC") == "1"


def _exit_code(error: TranslatorError) -> int:
    for kinds, code in _EXIT_CODES:
        if isinstance(error, kinds):
            return code
    return 1


def _load_config(args: argparse.Namespace) -> config.SiteConfig:
    overrides: Dict[str, Any] = {
        "lan_interface": args.lan_interface,
        "local_subnet": args.local_subnet,
        "virtual_subnet": args.virtual_subnet,
        "mesh_interface": args.mesh_interface,
        "allow_lan_to_mesh": args.allow_lan_to_mesh,
    }
    return config.load_site_config(args.config, overrides=overrides)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _cmd_apply(args: argparse.Namespace) -> int:
    cfg = _load_config(args)
    execute = _execution_enabled(args)
    if execute:
        engine: Any = IptablesEngine(args.iptables)
        if args.enable_forwarding:
            applier.enable_ip_forwarding(applier.IPV4_FORWARD)
    else:
        engine = DryRunEngine(args.iptables)

    result = applier.activate(
        cfg,
        engine,
        check_forwarding=execute and not args.skip_forwarding_check,
    )
    if not execute:
        for command in engine.commands:
            print(command)
        return 0
    print(
        f"Applied {len(result.rules)} rules for {cfg.virtual_subnet} -> "
        f"{cfg.local_subnet} on {result.lan_interface} ({cfg.mode} mode)."
    )
    return 0


def _cmd_revert(args: argparse.Namespace) -> int:
    cfg = _load_config(args)
    execute = _execution_enabled(args)
    engine: Any = IptablesEngine(args.iptables) if execute else DryRunEngine(args.iptables)
    result = applier.deactivate(cfg, engine)
    if not execute:
        for command in engine.commands:
            print(command)
        return 0
    print(f"Removed {len(result.rules)} rules from {result.lan_interface}.")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    cfg = _load_config(args)
    lan = applier.resolve_lan(cfg)
    ruleset = planner.plan_rules(cfg, lan)
    if args.output == "commands":
        for command in planner.render_commands(ruleset, args.iptables):
            print(command)
    else:
        _print_json(ruleset.to_payload())
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    cfg = _load_config(args)
    lan = applier.resolve_lan(cfg)
    ruleset = planner.plan_rules(cfg, lan)
    report = applier.rule_status(IptablesEngine(args.iptables), ruleset)
    _print_json({"lan_interface": lan, "mode": cfg.mode, "rules": report})
    # Healthy means one copy of every planned rule and no stale verdict.
    healthy = all(
        entry["present"] and entry["copies"] == 1
        if entry["planned"]
        else not entry["present"]
        for entry in report
    )
    return 0 if healthy else 1


def _cmd_resolve(args: argparse.Namespace) -> int:
    cfg = _load_config(args)
    print(applier.resolve_lan(cfg))
    return 0


def _cmd_tune_gro(args: argparse.Namespace) -> int:
    execute = _execution_enabled(args)
    if args.interface:
        if not tuning.tune_udp_gro(args.interface, execute=execute):
            print(f"UDP GRO tuning not applied on {args.interface}.")
        return 0
    iface = tuning.tune_default_route_interface(
        attempts=args.attempts, delay=args.delay, execute=execute
    )
    if iface is None:
        print("No default route found; skipping UDP GRO tuning.")
    return 0


def _add_site_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Site JSON file (default: $VIRTUAL_SUBNET_CONFIG or /etc/virtual-subnet/site.json)",
    )
    parser.add_argument(
        "--lan-interface",
        help="LAN interface name, or 'auto' for the default-route interface",
    )
    parser.add_argument("--local-subnet", help="Real LAN subnet, e.g. 192.168.10.0/24")
    parser.add_argument(
        "--virtual-subnet", help="Subnet advertised to the mesh, e.g. 100.64.42.0/24"
    )
    parser.add_argument("--mesh-interface", help="Mesh interface name (default tailscale0)")
    parser.add_argument(
        "--allow-lan-to-mesh",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Gateway mode: let LAN hosts reach the mesh through this host",
    )
    parser.add_argument(
        "--iptables", default="iptables", help="iptables executable to drive"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print commands without executing them",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="virtual-subnet",
        description="Map a mesh-advertised virtual subnet onto the local LAN",
    )
    parser.add_argument("--version", action="version", version=__version__)
    commands = parser.add_subparsers(dest="command", required=True)

    apply_parser = commands.add_parser("apply", help="Install the translation rules")
    _add_site_options(apply_parser)
    apply_parser.add_argument(
        "--enable-forwarding",
        action="store_true",
        help="Set net.ipv4.ip_forward=1 before applying",
    )
    apply_parser.add_argument(
        "--skip-forwarding-check",
        action="store_true",
        help="Do not require IPv4 forwarding to be enabled",
    )
    apply_parser.set_defaults(handler=_cmd_apply)

    revert_parser = commands.add_parser("revert", help="Remove the translation rules")
    _add_site_options(revert_parser)
    revert_parser.set_defaults(handler=_cmd_revert)

    plan_parser = commands.add_parser("plan", help="Print the planned rules")
    _add_site_options(plan_parser)
    plan_parser.add_argument(
        "--output",
        choices=["json", "commands"],
        default="json",
        help="Print the plan as JSON or as iptables commands",
    )
    plan_parser.set_defaults(handler=_cmd_plan)

    status_parser = commands.add_parser(
        "status", help="Report which planned rules are installed"
    )
    _add_site_options(status_parser)
    status_parser.set_defaults(handler=_cmd_status)

    resolve_parser = commands.add_parser("resolve", help="Print the resolved LAN interface")
    _add_site_options(resolve_parser)
    resolve_parser.set_defaults(handler=_cmd_resolve)

    gro_parser = commands.add_parser(
        "tune-gro", help="Tune UDP GRO on the default-route interface"
    )
    gro_parser.add_argument("--interface", help="Interface to tune instead of the default route")
    gro_parser.add_argument("--attempts", type=int, default=30)
    gro_parser.add_argument("--delay", type=float, default=2.0)
    gro_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only log the ethtool command",
    )
    gro_parser.set_defaults(handler=_cmd_tune_gro)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the virtual-subnet tool and return the process exit code."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    log_event("virtual_subnet.cli.start", command=args.command)
    try:
        return args.handler(args)
    except TranslatorError as error:
        log_event(
            "virtual_subnet.cli.failed",
            command=args.command,
            kind=error.kind,
            error=str(error),
        )
        print(f"error: {error.kind}: {error}", file=sys.stderr)
        return _exit_code(error)


if __name__ == "__main__":
    raise SystemExit(main())
