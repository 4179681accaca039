"""Drive a root shell inside an unprivileged network namespace."""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field
from typing import List

import pexpect

SHELL_PROMPT = "VSUBNET-NS> "
_EXIT_MARKER = "__EXIT__="
_FALLBACK_PATH = "/usr/sbin:/usr/bin:/sbin:/bin"

ANSI_ESCAPE_PATTERN = re.compile(r"\x1B(?:\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])")


class NamespaceCommandError(AssertionError):
    """A command inside the namespace exited non-zero."""


@dataclass
class NamespaceShell:
    """Minimal controller for a ``/bin/sh`` running under ``unshare``."""

    child: "pexpect.spawn"
    transcript: List[str] = field(default_factory=list)

    @classmethod
    def spawn(cls, unshare: str, *, timeout: int = 30) -> "NamespaceShell":
        child = pexpect.spawn(
            unshare,
            ["--net", "--map-root-user", "/bin/sh"],
            encoding="utf-8",
            timeout=timeout,
            echo=False,
            env={"PS1": SHELL_PROMPT, "PATH": os.environ.get("PATH", _FALLBACK_PATH)},
        )
        shell = cls(child=child)
        shell._configure_prompt()
        return shell

    def _configure_prompt(self) -> None:
        self.child.sendline(f"PS1='{SHELL_PROMPT}'; export PS1")
        self.child.expect_exact(SHELL_PROMPT)
        self.child.expect_exact(SHELL_PROMPT)

    def run(self, command: str, *, timeout: int = 60) -> str:
        self.transcript.append(f"$ {command}")
        self.child.sendline(command)
        try:
            self.child.expect_exact(SHELL_PROMPT, timeout=timeout)
        except (pexpect.TIMEOUT, pexpect.EOF) as exc:
            raise NamespaceCommandError(
                f"no prompt after '{command}': {exc}\n" + "\n".join(self.transcript)
            ) from exc
        output = (self.child.before or "").replace("\r", "")
        lines = [ANSI_ESCAPE_PATTERN.sub("", line).rstrip() for line in output.splitlines()]
        if lines and lines[0].strip() == command.strip():
            lines = lines[1:]
        cleaned = "\n".join(line for line in lines if line.strip())
        self.transcript.append(cleaned)
        return cleaned

    def run_status(self, command: str, *, timeout: int = 60) -> tuple[int, str]:
        """Run ``command`` and return its exit status and output."""

        wrapped = f"{{ {command}; }} 2>&1; printf '\\n{_EXIT_MARKER}%s\\n' $?"
        output = self.run(wrapped, timeout=timeout)
        lines = output.splitlines()
        status_lines = [line for line in lines if line.startswith(_EXIT_MARKER)]
        if not status_lines:
            raise NamespaceCommandError(
                f"missing exit marker for '{command}':\n{output}"
            )
        status = int(status_lines[-1][len(_EXIT_MARKER):].strip())
        body = "\n".join(line for line in lines if not line.startswith(_EXIT_MARKER))
        return status, body

    def run_checked(self, command: str, *, timeout: int = 60) -> str:
        status, body = self.run_status(command, timeout=timeout)
        if status != 0:
            raise NamespaceCommandError(
                f"'{command}' exited with status {status}:\n{body}"
            )
        return body

    def export(self, name: str, value: str) -> None:
        self.run(f"export {name}={shlex.quote(value)}")

    def close(self) -> None:
        if self.child.isalive():
            self.child.sendline("exit")
            self.child.close(force=True)
