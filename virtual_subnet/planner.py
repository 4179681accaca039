"""Plan the NAT and forwarding rules for a virtual subnet."""

from __future__ import annotations

import ipaddress
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .config import SiteConfig
from .logging_utils import log_event

ACCEPT = "ACCEPT"
DROP = "DROP"

# conntrack prints states in this order in ``iptables -S``.
_REPLY_STATES = "RELATED,ESTABLISHED"


@dataclass(frozen=True)
class Rule:
    """One iptables rule.

    Fields are rendered in the order ``iptables -S`` prints them so a
    planned rule can be compared with a listed one verbatim.
    """

    table: str
    chain: str
    target: str
    in_interface: Optional[str] = None
    out_interface: Optional[str] = None
    source: Optional[ipaddress.IPv4Network] = None
    destination: Optional[ipaddress.IPv4Network] = None
    ctstate: Optional[str] = None
    target_args: Tuple[str, ...] = ()
    comment: str = field(default="", compare=False)

    def spec(self) -> List[str]:
        """Return the rule arguments that follow the chain name."""

        args: List[str] = []
        if self.source is not None:
            args += ["-s", str(self.source)]
        if self.destination is not None:
            args += ["-d", str(self.destination)]
        if self.in_interface is not None:
            args += ["-i", self.in_interface]
        if self.out_interface is not None:
            args += ["-o", self.out_interface]
        if self.ctstate is not None:
            args += ["-m", "conntrack", "--ctstate", self.ctstate]
        args += ["-j", self.target, *self.target_args]
        return args

    def argv(self, operation: str) -> List[str]:
        """Return ``-t TABLE OPERATION CHAIN SPEC...`` for the rule tool."""

        return ["-t", self.table, operation, self.chain, *self.spec()]

    def listing(self) -> str:
        """Return the line ``iptables -S CHAIN`` prints for this rule."""

        return " ".join(["-A", self.chain, *self.spec()])

    def matches_packet(
        self,
        *,
        in_interface: str,
        out_interface: str,
        source: ipaddress.IPv4Address,
        destination: ipaddress.IPv4Address,
        established: bool = False,
    ) -> bool:
        """Return ``True`` when a forwarded packet would hit this rule."""

        if self.in_interface is not None and self.in_interface != in_interface:
            return False
        if self.out_interface is not None and self.out_interface != out_interface:
            return False
        if self.source is not None and source not in self.source:
            return False
        if self.destination is not None and destination not in self.destination:
            return False
        if self.ctstate is not None and not established:
            return False
        return True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "chain": self.chain,
            "spec": self.spec(),
            "comment": self.comment,
        }


@dataclass(frozen=True)
class RuleSet:
    """Planned rules, in application order.

    ``superseded`` lists rules of the other forwarding mode; they are never
    installed but are purged whenever the planned rules are applied or
    reverted so a mode switch cannot leave both verdicts behind.
    """

    rules: Tuple[Rule, ...]
    superseded: Tuple[Rule, ...] = ()
    lan_interface: str = ""
    mode: str = ""

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def __getitem__(self, index: int) -> Rule:
        return self.rules[index]

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-serialisable description of the plan."""

        return {
            "lan_interface": self.lan_interface,
            "mode": self.mode,
            "rules": [rule.to_payload() for rule in self.rules],
            "superseded": [rule.to_payload() for rule in self.superseded],
        }


def _lan_to_mesh_rule(cfg: SiteConfig, lan: str, verdict: str) -> Rule:
    comment = (
        "gateway mode: LAN may reach the mesh"
        if verdict == ACCEPT
        else "translator mode: LAN may not reach the mesh"
    )
    return Rule(
        table="filter",
        chain="FORWARD",
        target=verdict,
        in_interface=lan,
        out_interface=cfg.mesh_interface,
        comment=comment,
    )


def plan_rules(cfg: SiteConfig, lan: str) -> RuleSet:
    """Return the ordered rules translating ``cfg.virtual_subnet`` onto the LAN.

    Args:
        cfg: Validated site configuration.
        lan: Resolved LAN interface name.

    Returns:
        A :class:`RuleSet` with five rules: the inbound NETMAP, the outbound
        masquerade, the mesh->LAN forward allow, the LAN->mesh verdict and
        the exception letting replies of mesh-initiated sessions back out.
        NAT table rules come first.
    """

    verdict = ACCEPT if cfg.allow_lan_to_mesh else DROP
    opposite = DROP if cfg.allow_lan_to_mesh else ACCEPT

    rules = (
        Rule(
            table="nat",
            chain="PREROUTING",
            target="NETMAP",
            in_interface=cfg.mesh_interface,
            destination=cfg.virtual_subnet,
            target_args=("--to", str(cfg.local_subnet)),
            comment="map virtual subnet onto the LAN, keeping host bits",
        ),
        Rule(
            table="nat",
            chain="POSTROUTING",
            target="MASQUERADE",
            out_interface=lan,
            source=cfg.virtual_subnet,
            comment="masquerade virtual-subnet traffic leaving on the LAN",
        ),
        Rule(
            table="filter",
            chain="FORWARD",
            target=ACCEPT,
            in_interface=cfg.mesh_interface,
            out_interface=lan,
            source=cfg.virtual_subnet,
            destination=cfg.local_subnet,
            comment="allow mesh to LAN through the virtual subnet",
        ),
        _lan_to_mesh_rule(cfg, lan, verdict),
        Rule(
            table="filter",
            chain="FORWARD",
            target=ACCEPT,
            in_interface=lan,
            out_interface=cfg.mesh_interface,
            source=cfg.local_subnet,
            ctstate=_REPLY_STATES,
            comment="allow LAN replies to mesh-initiated sessions",
        ),
    )
    ruleset = RuleSet(
        rules=rules,
        superseded=(_lan_to_mesh_rule(cfg, lan, opposite),),
        lan_interface=lan,
        mode=cfg.mode,
    )
    log_event(
        "virtual_subnet.planner.plan",
        lan_interface=lan,
        mesh_interface=cfg.mesh_interface,
        mode=cfg.mode,
        rules=[rule.listing() for rule in rules],
    )
    return ruleset


def netmap_address(
    address: ipaddress.IPv4Address | str,
    virtual: ipaddress.IPv4Network,
    local: ipaddress.IPv4Network,
) -> ipaddress.IPv4Address:
    """Return the address NETMAP rewrites ``address`` to.

    The network bits come from ``local`` and the host bits from ``address``.
    """

    addr = ipaddress.IPv4Address(address)
    if addr not in virtual:
        raise ValueError(f"{addr} is not inside {virtual}")
    host_bits = int(addr) & int(virtual.hostmask)
    mapped = int(local.network_address) | (host_bits & int(local.hostmask))
    return ipaddress.IPv4Address(mapped)


def engine_order(ruleset: RuleSet, table: str, chain: str) -> List[Rule]:
    """Return the rules of one chain in the order the engine evaluates them.

    Every rule is inserted at the head of its chain, so the last one applied
    is evaluated first.
    """

    selected = [rule for rule in ruleset.rules if rule.table == table and rule.chain == chain]
    return list(reversed(selected))


def forward_verdict(
    ruleset: RuleSet,
    *,
    in_interface: str,
    out_interface: str,
    source: ipaddress.IPv4Address | str,
    destination: ipaddress.IPv4Address | str,
    established: bool = False,
) -> Optional[str]:
    """Return the verdict of the planned FORWARD rules for a packet.

    ``None`` means no planned rule matched and the host's own policy decides.
    """

    src = ipaddress.IPv4Address(source)
    dst = ipaddress.IPv4Address(destination)
    for rule in engine_order(ruleset, "filter", "FORWARD"):
        if rule.matches_packet(
            in_interface=in_interface,
            out_interface=out_interface,
            source=src,
            destination=dst,
            established=established,
        ):
            return rule.target
    return None


def render_commands(ruleset: RuleSet, binary: str = "iptables") -> List[str]:
    """Return the insert commands for ``ruleset`` as shell strings."""

    return [shlex.join([binary, "-w", *rule.argv("-I")]) for rule in ruleset.rules]
