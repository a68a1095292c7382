"""gh-proxy: run allowlisted gh commands for the container.

Per request: decode, validate, audit the decision, execute (or answer with
help), audit the outcome, respond.
Denied and malformed requests never spawn a process.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Sequence

from sandbox_proxy.core.audit import AuditLogger
from sandbox_proxy.core.codec import command_response, decode_command_request
from sandbox_proxy.core.config import ProxyConfig, audit_log_path
from sandbox_proxy.core.models import (
    EXIT_DENIED,
    AuditAction,
    AuditDecision,
    AuditStage,
    CommandResponse,
    ProtocolError,
)
from sandbox_proxy.core.policy import DEFAULT_POLICY, PolicyTable
from sandbox_proxy.core.validator import CommandValidator
from sandbox_proxy.proxy.server import ProxyService, UnixProxyServer
from sandbox_proxy.sandbox.executor import CancelCheck, ExecutionResult, SubprocessExecutor

logger = logging.getLogger(__name__)


class GhProxyService(ProxyService):
    name = "gh-proxy"

    def __init__(
        self,
        audit: AuditLogger,
        executor: SubprocessExecutor,
        validator: CommandValidator | None = None,
    ) -> None:
        super().__init__(audit)
        self.executor = executor
        self.validator = validator or CommandValidator()

    def handle(self, line: bytes, cancelled: CancelCheck | None = None) -> CommandResponse | None:
        try:
            request = decode_command_request(line)
        except ProtocolError as e:
            logger.info(f"gh-proxy: rejected malformed request: {e}")
            return self.reject_frame(line, str(e))
        return self.dispatch(request.args, cancelled)

    def dispatch(
        self, args: Sequence[str], cancelled: CancelCheck | None = None
    ) -> CommandResponse | None:
        """Validate and run one argument vector.

        Returns None when the client disconnected mid-execution.
        """
        args = list(args)
        decision = self.validator.validate(args)
        if not decision.allowed:
            logger.info(f"gh-proxy: denied {args!r}: {decision.reason}")
            self.audit.log(
                args,
                AuditDecision.DENIED,
                AuditAction.PASSTHROUGH,
                reason=decision.reason,
                exit_code=EXIT_DENIED,
            )
            return self.error_response(EXIT_DENIED, decision.reason)

        plan = decision.plan
        logger.debug(f"gh-proxy: allowed {args!r} as {plan.kind.value}")
        # The decision is on disk before the child starts; the outcome follows it
        self.audit.log(args, AuditDecision.ALLOWED, plan.audit_action)

        started = time.monotonic()
        result: ExecutionResult | None = None
        try:
            result = self.executor.run(plan, cancelled=cancelled)
        finally:
            self.audit.log(
                args,
                AuditDecision.ALLOWED,
                plan.audit_action,
                reason=_outcome(result),
                exit_code=result.exit_code if result is not None else None,
                duration_ms=(time.monotonic() - started) * 1000,
                stage=AuditStage.COMPLETED,
            )

        if result.cancelled:
            return None
        stderr = self.diagnostic(result.stderr) if result.synthetic else result.stderr
        return command_response(result.exit_code, result.stdout, stderr)

    def error_response(self, exit_code: int, message: str) -> CommandResponse:
        return CommandResponse(exit_code=exit_code, stderr=self.diagnostic(message))

    def close(self) -> None:
        self.executor.kill_all()


def _outcome(result: ExecutionResult | None) -> str | None:
    if result is None:
        return "internal error"
    if result.timed_out:
        return "timed out"
    if result.cancelled:
        return "client disconnected"
    if result.synthetic:
        return result.stderr
    return None


def create_gh_proxy(
    socket_path: Path,
    workspace: Path,
    config: ProxyConfig,
    policy: PolicyTable = DEFAULT_POLICY,
) -> UnixProxyServer:
    """Wire a gh-proxy server for one workspace.

    Raises:
        ResourceError: If the socket cannot be bound
    """
    audit = AuditLogger(audit_log_path(socket_path), GhProxyService.name)
    executor = SubprocessExecutor(config, workspace)
    service = GhProxyService(audit, executor, CommandValidator(policy))
    return UnixProxyServer(socket_path, service, config)
