"""Apply and revert planned rules."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .config import AUTO_INTERFACE, SiteConfig
from .engine import RuleEngine
from .errors import ForwardingDisabled, InvalidSiteConfig
from .logging_utils import log_event
from .planner import Rule, RuleSet, plan_rules
from .resolver import resolve_interface

IPV4_FORWARD = Path("/proc/sys/net/ipv4/ip_forward")

# Upper bound on duplicate copies removed per rule; a well-behaved engine
# reports the rule absent long before this.
_MAX_DUPLICATES = 16


@dataclass(frozen=True)
class ActivationResult:
    """Outcome of :func:`activate` or :func:`deactivate`."""

    lan_interface: str
    ruleset: RuleSet
    rules: List[Rule]


def _purge(engine: RuleEngine, rule: Rule) -> int:
    """Delete every installed copy of ``rule`` and return how many went."""

    removed = 0
    while removed < _MAX_DUPLICATES and engine.delete(rule):
        removed += 1
    if removed:
        log_event(
            "virtual_subnet.applier.purged",
            rule=rule.listing(),
            table=rule.table,
            copies=removed,
        )
    return removed


def apply_rules(engine: RuleEngine, ruleset: RuleSet) -> List[Rule]:
    """Install ``ruleset`` so that exactly one copy of each rule is present.

    Rules of the other forwarding mode are purged first.  Each planned rule
    is then deleted (all copies, absence tolerated) and inserted, in order.
    Any other engine failure propagates immediately; rules already inserted
    stay in place until :func:`revert_rules` is called.
    """

    log_event(
        "virtual_subnet.applier.apply.start",
        lan_interface=ruleset.lan_interface,
        mode=ruleset.mode,
        rules=len(ruleset),
    )
    for rule in ruleset.superseded:
        _purge(engine, rule)

    applied: List[Rule] = []
    for rule in ruleset.rules:
        _purge(engine, rule)
        engine.insert(rule)
        applied.append(rule)
        log_event(
            "virtual_subnet.applier.apply.inserted",
            rule=rule.listing(),
            table=rule.table,
            comment=rule.comment,
        )

    log_event("virtual_subnet.applier.apply.finished", inserted=len(applied))
    return applied


def revert_rules(engine: RuleEngine, ruleset: RuleSet) -> List[Rule]:
    """Remove every rule of ``ruleset`` (and its superseded variants).

    Returns the rules for which at least one copy was installed.
    """

    log_event(
        "virtual_subnet.applier.revert.start",
        lan_interface=ruleset.lan_interface,
        mode=ruleset.mode,
    )
    removed: List[Rule] = []
    for rule in (*ruleset.rules, *ruleset.superseded):
        if _purge(engine, rule):
            removed.append(rule)
    log_event("virtual_subnet.applier.revert.finished", removed=len(removed))
    return removed


def rule_status(engine: RuleEngine, ruleset: RuleSet) -> List[Dict[str, Any]]:
    """Report whether each planned and superseded rule is installed.

    ``copies`` counts identical lines in the chain listing, so duplicates
    left by an earlier tool or a manual ``-A`` show up as ``copies > 1``.
    """

    listings: Dict[Tuple[str, str], List[str]] = {}
    report: List[Dict[str, Any]] = []
    entries = [(rule, True) for rule in ruleset.rules]
    entries += [(rule, False) for rule in ruleset.superseded]
    for rule, planned in entries:
        key = (rule.table, rule.chain)
        if key not in listings:
            listings[key] = engine.list_rules(rule.table, rule.chain)
        report.append(
            {
                **rule.to_payload(),
                "planned": planned,
                "present": engine.exists(rule),
                "copies": listings[key].count(rule.listing()),
            }
        )
    return report


def check_ip_forwarding(path: Path = IPV4_FORWARD) -> None:
    """Raise :class:`ForwardingDisabled` unless IPv4 forwarding is on."""

    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ForwardingDisabled(f"cannot read {path}: {exc}") from exc
    if value != "1":
        log_event("virtual_subnet.applier.forwarding.disabled", path=path, value=value)
        raise ForwardingDisabled(
            f"IPv4 forwarding is disabled ({path} = {value!r}); "
            "set net.ipv4.ip_forward = 1"
        )


def enable_ip_forwarding(path: Path = IPV4_FORWARD) -> None:
    """Turn IPv4 forwarding on."""

    try:
        path.write_text("1\n", encoding="utf-8")
    except OSError as exc:
        log_event("virtual_subnet.applier.forwarding.write_failed", path=path, error=str(exc))
        raise ForwardingDisabled(f"cannot write {path}: {exc}") from exc
    log_event("virtual_subnet.applier.forwarding.enabled", path=path)


def resolve_lan(
    cfg: SiteConfig,
    *,
    net_path: Path = Path("/sys/class/net"),
    route_table: Path = Path("/proc/net/route"),
) -> str:
    """Resolve ``cfg.lan_interface`` and refuse the mesh interface itself."""

    lan = resolve_interface(cfg.lan_interface, net_path=net_path, route_table=route_table)
    if lan == cfg.mesh_interface:
        # ``auto`` picked the mesh interface itself (mesh used as exit node).
        raise InvalidSiteConfig(
            f"resolved LAN interface '{lan}' is the mesh interface; set lanInterface explicitly"
        )
    return lan


def activate(
    cfg: SiteConfig,
    engine: RuleEngine,
    *,
    net_path: Path = Path("/sys/class/net"),
    route_table: Path = Path("/proc/net/route"),
    forward_path: Path = IPV4_FORWARD,
    check_forwarding: bool = True,
) -> ActivationResult:
    """Start hook: resolve the LAN interface, plan, check forwarding, apply."""

    lan = resolve_lan(cfg, net_path=net_path, route_table=route_table)
    ruleset = plan_rules(cfg, lan)
    if check_forwarding:
        check_ip_forwarding(forward_path)
    applied = apply_rules(engine, ruleset)
    return ActivationResult(lan_interface=lan, ruleset=ruleset, rules=applied)


def deactivate(
    cfg: SiteConfig,
    engine: RuleEngine,
    *,
    net_path: Path = Path("/sys/class/net"),
    route_table: Path = Path("/proc/net/route"),
) -> ActivationResult:
    """Stop hook: resolve the LAN interface, plan and revert.

    A literal interface that has since disappeared is still torn down, since
    rules refer to interfaces by name.
    """

    if cfg.lan_interface == AUTO_INTERFACE:
        lan = resolve_interface(cfg.lan_interface, net_path=net_path, route_table=route_table)
    else:
        lan = cfg.lan_interface
    ruleset = plan_rules(cfg, lan)
    removed = revert_rules(engine, ruleset)
    return ActivationResult(lan_interface=lan, ruleset=ruleset, rules=removed)
