"""Claude Code CLI provider.

Runs ``claude -p`` once per turn with ``--output-format stream-json``.
Multi-turn continuity comes from ``--resume <session_id>``, where the
session id is the token reported by the CLI's ``system/init`` record.
"""
from __future__ import annotations

import logging

from .base import Provider, TurnRequest

logger = logging.getLogger(__name__)


class ClaudeProvider(Provider):
    """Provider backed by the ``claude`` CLI in print mode.

    Auth is whatever the CLI itself is configured with; nothing is
    injected into the environment.
    """

    def __init__(
        self,
        command: str = "claude",
        default_model: str | None = None,
        permission_mode: str | None = None,
        extra_args: list[str] | None = None,
        verbose: bool = True,
    ) -> None:
        self._command = self.resolve_command(command or "claude")
        self._default_model = default_model
        self._permission_mode = permission_mode
        self._extra_args = list(extra_args or [])
        self._verbose = verbose

    @property
    def name(self) -> str:
        return "claude"

    @property
    def command(self) -> str:
        return self._command

    def build_command(self, request: TurnRequest) -> list[str]:
        cmd = [self._command, "-p", "--output-format", "stream-json"]
        if self._verbose:
            cmd.append("--verbose")
        if request.conversation_token:
            cmd.extend(["--resume", request.conversation_token])
        model = request.model or self._default_model
        if model:
            cmd.extend(["--model", model])
        if self._permission_mode:
            cmd.extend(["--permission-mode", self._permission_mode])
        cmd.extend(self._extra_args)
        # Prompt is always the final argument, after the option terminator
        cmd.extend(["--", request.prompt])
        logger.debug(
            "claude command: resume=%s model=%s extra=%d",
            (request.conversation_token or "-")[:8], model, len(self._extra_args),
        )
        return cmd
