"""Packet-filter rule engine boundary."""

from __future__ import annotations

import shlex
import shutil
import subprocess
from typing import List, Protocol

from .errors import RuleApplyFailed, RuleEngineUnavailable
from .logging_utils import log_event
from .planner import Rule

# iptables exits 1 for "no such rule" but also for a few real failures, so
# the stderr text decides.
_NOT_FOUND_MARKERS = (
    "does a matching rule exist",
    "bad rule",
    "no chain/target/match by that name",
)
_UNAVAILABLE_MARKERS = (
    "permission denied",
    "you must be root",
    "can't initialize iptables table",
)


class RuleEngine(Protocol):
    """Insert/delete interface the applier drives."""

    def exists(self, rule: Rule) -> bool: ...

    def insert(self, rule: Rule) -> None: ...

    def delete(self, rule: Rule) -> bool: ...

    def list_rules(self, table: str, chain: str) -> List[str]: ...


class IptablesEngine:
    """Drive ``iptables`` through blocking subprocess calls."""

    def __init__(self, binary: str = "iptables") -> None:
        self.binary = binary

    def _command(self, args: List[str]) -> List[str]:
        return [self.binary, "-w", *args]

    def _invoke(self, args: List[str]) -> subprocess.CompletedProcess:
        command = self._command(args)
        if shutil.which(self.binary) is None:
            log_event(
                "virtual_subnet.engine.command.unavailable",
                command=command,
                reason="executable not found",
            )
            raise RuleEngineUnavailable(self.binary, "executable not found")

        log_event("virtual_subnet.engine.command.start", command=command)
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            log_event(
                "virtual_subnet.engine.command.unavailable",
                command=command,
                reason=str(exc),
            )
            raise RuleEngineUnavailable(self.binary, str(exc)) from exc

        status = "success" if result.returncode == 0 else "error"
        log_event(
            "virtual_subnet.engine.command.finished",
            command=command,
            status=status,
            returncode=result.returncode,
            stderr=(result.stderr or "").strip(),
        )
        if result.returncode != 0:
            lowered = (result.stderr or "").lower()
            if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
                raise RuleEngineUnavailable(self.binary, (result.stderr or "").strip())
        return result

    def _fail(self, args: List[str], result: subprocess.CompletedProcess) -> RuleApplyFailed:
        return RuleApplyFailed(self._command(args), result.returncode, result.stderr or "")

    def exists(self, rule: Rule) -> bool:
        """Return ``True`` when an identical rule is installed (``-C``)."""

        args = rule.argv("-C")
        result = self._invoke(args)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise self._fail(args, result)

    def insert(self, rule: Rule) -> None:
        """Insert ``rule`` at the head of its chain."""

        args = rule.argv("-I")
        result = self._invoke(args)
        if result.returncode != 0:
            raise self._fail(args, result)

    def delete(self, rule: Rule) -> bool:
        """Delete one copy of ``rule``; return ``False`` when none was installed."""

        args = rule.argv("-D")
        result = self._invoke(args)
        if result.returncode == 0:
            return True
        lowered = (result.stderr or "").lower()
        if result.returncode == 1 and any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            log_event(
                "virtual_subnet.engine.delete.absent",
                rule=rule.listing(),
                table=rule.table,
            )
            return False
        raise self._fail(args, result)

    def list_rules(self, table: str, chain: str) -> List[str]:
        """Return the ``-A`` lines ``iptables -S`` prints for ``chain``."""

        args = ["-t", table, "-S", chain]
        result = self._invoke(args)
        if result.returncode != 0:
            raise self._fail(args, result)
        return [
            line.strip()
            for line in (result.stdout or "").splitlines()
            if line.startswith("-A ")
        ]


class DryRunEngine:
    """Record the commands an :class:`IptablesEngine` would run.

    Nothing is ever installed, so every rule reads as absent.
    """

    def __init__(self, binary: str = "iptables") -> None:
        self.binary = binary
        self.commands: List[str] = []

    def _record(self, args: List[str]) -> None:
        command = shlex.join([self.binary, "-w", *args])
        self.commands.append(command)
        log_event(
            "virtual_subnet.engine.command.skip",
            command=command,
            reason="execution disabled",
        )

    def exists(self, rule: Rule) -> bool:
        return False

    def insert(self, rule: Rule) -> None:
        self._record(rule.argv("-I"))

    def delete(self, rule: Rule) -> bool:
        self._record(rule.argv("-D"))
        return False

    def list_rules(self, table: str, chain: str) -> List[str]:
        return []
