"""Bash tool adapter."""

from __future__ import annotations

from .base import ToolAdapter


class BashAdapter(ToolAdapter):
    """Adapter for Bash tool invocations."""

    def referenced_paths(self, tool_input: dict) -> list[str]:
        """
        Absolute paths mentioned in the command.

        Only paths with an extension are picked up, so `cd /tmp` is ignored
        while `cat /etc/hosts.conf` yields /etc/hosts.conf.
        """
        return self.explicit_paths(tool_input) + self.command_paths(tool_input.get("command"))
