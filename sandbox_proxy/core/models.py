"""Wire models, policy decisions, audit records and core exceptions.

Uses Pydantic for exhaustive validation of untrusted request shapes at the
socket boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr

if TYPE_CHECKING:
    from sandbox_proxy.core.policy import ExtensionCommand, PolicyRule

# Exit codes reported to the container for synthetic (non-CLI) outcomes
EXIT_DENIED = 1
EXIT_PROTOCOL_ERROR = 1
EXIT_EXEC_ERROR = 1
EXIT_TIMEOUT = 124


class ProxyError(Exception):
    """Base class for all proxy errors."""

    pass


class PolicyDenied(ProxyError):
    """Command, flag or scope not permitted by the policy table."""

    pass


class ProtocolError(ProxyError):
    """Malformed request or response on the wire."""

    pass


class ExecutionFailure(ProxyError):
    """Underlying CLI could not be run to completion."""

    pass


class ResourceError(ProxyError):
    """Host resource unavailable (socket bind, log file, directories)."""

    pass


class ConfigError(ProxyError):
    """Invalid proxy configuration."""

    pass


class PolicyScope(str, Enum):
    """Where a permitted command may act."""

    READ_ANY = "read"
    WRITE_WORKSPACE_ONLY = "write"


class PlanKind(str, Enum):
    """Execution strategy chosen by the validator."""

    PASSTHROUGH = "passthrough"
    EXTENSION = "extension"
    HELP = "help"


class AuditDecision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


class AuditStage(str, Enum):
    """Allowed gh commands get a decided record before the child starts and a
    completed record with its outcome. Every other request gets one decided record.
    """

    DECIDED = "decided"
    COMPLETED = "completed"


class AuditAction(str, Enum):
    PASSTHROUGH = "passthrough"
    EXTENSION = "extension"
    HELP = "help"
    READ_IMAGE = "read_image"
    INVALID = "invalid"


# --- Wire Models ---


class CommandRequest(BaseModel):
    """gh-proxy request: the literal, unexpanded argument vector."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    args: list[StrictStr]


class ClipboardRequest(BaseModel):
    """clipboard-proxy request: a single recognized command name."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    command: StrictStr


class CommandResponse(BaseModel):
    """gh-proxy response.

    stdout_b64 is only set when the subprocess output is not valid UTF-8;
    stdout is then empty.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int
    stdout_b64: str | None = None


class ClipboardResponse(BaseModel):
    """clipboard-proxy response carrying base64 image bytes."""

    stdout_b64: str = ""
    stderr: str = ""
    exit_code: int


ProxyResponse = Union[CommandResponse, ClipboardResponse]


class AuditRecord(BaseModel):
    """One line of the per-workspace audit log."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    proxy: str
    request: list[str] | str
    decision: AuditDecision
    action: AuditAction
    stage: AuditStage = AuditStage.DECIDED
    reason: str | None = None
    exit_code: int | None = None
    duration_ms: float | None = None


# --- Policy Decisions ---


@dataclass(frozen=True)
class ExecutionPlan:
    """What to run for an allowed request.

    args is always the exact vector received from the client; for extensions
    it excludes the leading group/subcommand pair.
    """

    kind: PlanKind
    args: tuple[str, ...]
    rule: PolicyRule | None = None
    extension: ExtensionCommand | None = None
    help_text: str | None = None

    @property
    def audit_action(self) -> AuditAction:
        return AuditAction(self.kind.value)


@dataclass(frozen=True)
class Allow:
    plan: ExecutionPlan

    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: str

    allowed = False

    def as_exception(self) -> PolicyDenied:
        return PolicyDenied(self.reason)


Decision = Union[Allow, Deny]


def describe_request(value: Any, limit: int = 1000) -> list[str] | str:
    """Best-effort printable form of a request for audit records."""
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = value if isinstance(value, str) else repr(value)
    text = text.rstrip("\n")
    if len(text) > limit:
        return text[:limit] + "..."
    return text
