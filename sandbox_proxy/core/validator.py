"""Allow/deny decisions for gh argument vectors.

SECURITY: The grammar here is deliberately narrower than gh's own parser.
Anything this module cannot classify with certainty is denied.
"""

from __future__ import annotations

from typing import Sequence

from sandbox_proxy.core.help import maybe_help
from sandbox_proxy.core.models import Allow, Decision, Deny, ExecutionPlan, PlanKind
from sandbox_proxy.core.policy import DEFAULT_POLICY, REPO_SELECTOR_FLAGS, PolicyRule, PolicyTable

END_OF_FLAGS = "--"


def flag_name(token: str) -> str:
    """Name of a flag token: "--state=open" -> "--state".

    Short flags are returned whole, so attached values and clusters ("-L5",
    "-R=x", "-dR") never match an allowlist entry.
    """
    if token.startswith("--") and "=" in token:
        return token.split("=", 1)[0]
    return token


def is_flag(token: str) -> bool:
    return token.startswith("-")


def find_repo_selector(tokens: Sequence[str]) -> str | None:
    """First flag-like token that could select a repository, if any.

    Conservative substring match over every dash-prefixed token, including
    those after "--" and inside "--flag=value" forms.
    """
    for token in tokens:
        if is_flag(token) and any(sel in token for sel in REPO_SELECTOR_FLAGS):
            return token
    return None


def find_disallowed_flag(tokens: Sequence[str], rule: PolicyRule) -> str | None:
    """First flag not in the rule's allowlist; tokens after "--" are positional."""
    for token in tokens:
        if token == END_OF_FLAGS:
            return None
        if is_flag(token) and not rule.permits(flag_name(token)):
            return flag_name(token)
    return None


class CommandValidator:
    """Decide whether a gh request may run, and how.

    Order: help requests, extension commands (which validate their own
    arguments), then exact (group, subcommand) lookup with flag and scope
    checks. There is no prefix or wildcard matching.
    """

    def __init__(self, policy: PolicyTable = DEFAULT_POLICY) -> None:
        self.policy = policy

    def validate(self, args: Sequence[str]) -> Decision:
        args = tuple(args)

        help_text = maybe_help(self.policy, args)
        if help_text is not None:
            return Allow(ExecutionPlan(kind=PlanKind.HELP, args=args, help_text=help_text))

        if len(args) < 2:
            return Deny(f"unsupported command: gh {' '.join(args)}".rstrip())

        group, subcommand, rest = args[0], args[1], args[2:]
        command = f"gh {group} {subcommand}"

        extension = self.policy.find_extension(group, subcommand)
        if extension is not None:
            return Allow(ExecutionPlan(kind=PlanKind.EXTENSION, args=rest, extension=extension))

        rule = self.policy.find_rule(group, subcommand)
        if rule is None:
            return Deny(f"unsupported command: {command}")

        if rule.is_write:
            selector = find_repo_selector(rest)
            if selector is not None:
                return Deny(
                    f"repository selector not permitted for write command {command}: "
                    f"{selector} (writes always target the workspace repository)"
                )

        flag = find_disallowed_flag(rest, rule)
        if flag is not None:
            hint = " (pass short flags separately)" if _is_short_cluster(flag) else ""
            return Deny(f"flag not permitted for {command}: {flag}{hint}")

        return Allow(ExecutionPlan(kind=PlanKind.PASSTHROUGH, args=args, rule=rule))


def _is_short_cluster(flag: str) -> bool:
    return not flag.startswith("--") and len(flag) > 2


def validate(args: Sequence[str], policy: PolicyTable = DEFAULT_POLICY) -> Decision:
    """Validate args against the policy table."""
    return CommandValidator(policy).validate(args)
