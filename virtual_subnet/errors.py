"""Failure kinds raised while resolving, planning and applying rules."""

from __future__ import annotations

from typing import Optional, Sequence


class TranslatorError(Exception):
    """Base class for every activation failure.

    ``kind`` is a short stable tag used by the CLI diagnostic.
    """

    kind = "translator-error"


class InterfaceNotFound(TranslatorError, LookupError):
    """A named LAN interface does not exist on the host."""

    kind = "interface-not-found"

    def __init__(self, interface: str, available: Sequence[str] = ()) -> None:
        self.interface = interface
        self.available = list(available)
        message = f"LAN interface '{interface}' does not exist"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class NoDefaultRoute(TranslatorError, LookupError):
    """The ``auto`` selector found no IPv4 default route."""

    kind = "no-default-route"

    def __init__(self) -> None:
        super().__init__("could not determine the LAN interface: no default route found")


class InvalidSiteConfig(TranslatorError, ValueError):
    """The site configuration is missing fields or has malformed values."""

    kind = "invalid-config"


class InvalidSubnet(InvalidSiteConfig):
    """A subnet is not valid IPv4 CIDR or the pair cannot be mapped."""

    kind = "invalid-subnet"

    def __init__(self, message: str, *, subnet: Optional[str] = None) -> None:
        self.subnet = subnet
        super().__init__(message)


class ForwardingDisabled(TranslatorError):
    """Kernel IPv4 forwarding is off, so translated traffic would be dropped."""

    kind = "forwarding-disabled"


class RuleEngineUnavailable(TranslatorError):
    """The packet-filter tool cannot be invoked at all."""

    kind = "rule-engine-unavailable"

    def __init__(self, binary: str, reason: str) -> None:
        self.binary = binary
        self.reason = reason
        super().__init__(f"cannot run {binary}: {reason}")


class RuleApplyFailed(TranslatorError):
    """The packet-filter tool rejected a rule insert or delete."""

    kind = "rule-apply-failed"

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"'{' '.join(self.command)}' exited with status {returncode}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)
