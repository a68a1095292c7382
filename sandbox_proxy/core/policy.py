"""Compiled-in allowlist of gh commands the container may run.

The table is built once at import time and never mutated. Validators receive it
by reference; there is no reload path.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Mapping

from sandbox_proxy.core.extensions import handle_run_logs
from sandbox_proxy.core.models import PolicyScope

if TYPE_CHECKING:
    from sandbox_proxy.sandbox.executor import ExecutionResult, ExtensionContext

CommandHandler = Callable[[tuple[str, ...], "ExtensionContext"], "ExecutionResult"]

# Flags that select a repository other than the workspace one
REPO_SELECTOR_FLAGS = ("--repo", "-R")


@dataclass(frozen=True)
class PolicyRule:
    """Permitted group/subcommand with its flag allowlist.

    allowed_flags keeps declaration order so help output can pair short and
    long spellings.
    """

    group: str
    subcommand: str
    allowed_flags: tuple[str, ...]
    scope: PolicyScope = PolicyScope.READ_ANY

    @property
    def key(self) -> tuple[str, str]:
        return (self.group, self.subcommand)

    @property
    def is_write(self) -> bool:
        return self.scope == PolicyScope.WRITE_WORKSPACE_ONLY

    def permits(self, flag: str) -> bool:
        return flag in self.allowed_flags


@dataclass(frozen=True)
class ExtensionCommand:
    """Proxy-side operation that is not a direct gh passthrough."""

    group: str
    subcommand: str
    description: str
    help_text: str
    handler: CommandHandler

    @property
    def key(self) -> tuple[str, str]:
        return (self.group, self.subcommand)

    @property
    def name(self) -> str:
        return f"{self.group} {self.subcommand}"


class PolicyTable:
    """Immutable lookup of rules and extensions by exact (group, subcommand)."""

    def __init__(
        self,
        rules: Iterable[PolicyRule],
        extensions: Iterable[ExtensionCommand] = (),
    ) -> None:
        rule_map: dict[tuple[str, str], PolicyRule] = {}
        for rule in rules:
            if rule.key in rule_map:
                raise ValueError(f"Duplicate policy rule: {rule.group} {rule.subcommand}")
            rule_map[rule.key] = rule

        ext_map: dict[tuple[str, str], ExtensionCommand] = {}
        for ext in extensions:
            if ext.key in ext_map or ext.key in rule_map:
                raise ValueError(f"Extension shadows existing command: {ext.name}")
            ext_map[ext.key] = ext

        self._rules: Mapping[tuple[str, str], PolicyRule] = MappingProxyType(rule_map)
        self._extensions: Mapping[tuple[str, str], ExtensionCommand] = MappingProxyType(ext_map)

    def find_rule(self, group: str, subcommand: str) -> PolicyRule | None:
        return self._rules.get((group, subcommand))

    def find_extension(self, group: str, subcommand: str) -> ExtensionCommand | None:
        return self._extensions.get((group, subcommand))

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        return tuple(self._rules.values())

    @property
    def extensions(self) -> tuple[ExtensionCommand, ...]:
        return tuple(self._extensions.values())

    def groups(self) -> list[str]:
        """Command groups in declaration order, extensions last."""
        seen: list[str] = []
        for group, _ in [*self._rules.keys(), *self._extensions.keys()]:
            if group not in seen:
                seen.append(group)
        return seen

    def rules_for_group(self, group: str) -> list[PolicyRule]:
        return [r for r in self._rules.values() if r.group == group]

    def extensions_for_group(self, group: str) -> list[ExtensionCommand]:
        return [e for e in self._extensions.values() if e.group == group]

    def __iter__(self) -> Iterator[PolicyRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)


def _read(group: str, subcommand: str, *flags: str) -> PolicyRule:
    return PolicyRule(group, subcommand, (*flags, *REPO_SELECTOR_FLAGS), PolicyScope.READ_ANY)


def _write(group: str, subcommand: str, *flags: str) -> PolicyRule:
    return PolicyRule(group, subcommand, flags, PolicyScope.WRITE_WORKSPACE_ONLY)


_JSON_OUTPUT = ("--json", "--jq", "-q")
_TEMPLATE_OUTPUT = ("--template", "-t")
_WEB = ("--web", "-w")

DEFAULT_RULES: tuple[PolicyRule, ...] = (
    # Read commands: may target any repository
    _read(
        "pr", "list",
        "--state", "-s", "--limit", "-L", *_JSON_OUTPUT, "--label", "-l",
        "--author", "-A", "--assignee", "-a", "--base", "-B", "--head", "-H",
        "--search", "-S", "--draft", "-d", *_TEMPLATE_OUTPUT, *_WEB, "--app",
    ),
    _read("pr", "view", *_JSON_OUTPUT, "--comments", "-c", *_TEMPLATE_OUTPUT, *_WEB),
    _read("pr", "diff", "--color", "--patch", "--name-only"),
    _read(
        "pr", "checks",
        *_JSON_OUTPUT, "--watch", "--interval", "-i", "--fail-fast", "--required", *_WEB,
    ),
    _read(
        "issue", "list",
        "--state", "-s", "--limit", "-L", *_JSON_OUTPUT, "--label", "-l",
        "--author", "-A", "--assignee", "-a", "--milestone", "-m",
        "--search", "-S", *_TEMPLATE_OUTPUT, *_WEB,
    ),
    _read("issue", "view", *_JSON_OUTPUT, "--comments", "-c", *_TEMPLATE_OUTPUT, *_WEB),
    _read("repo", "view", *_JSON_OUTPUT, *_TEMPLATE_OUTPUT, *_WEB),
    _read(
        "release", "list",
        "--limit", "-L", *_JSON_OUTPUT, "--exclude-drafts", "--exclude-pre-releases",
        "--order", "-O",
    ),
    _read("release", "view", *_JSON_OUTPUT, *_TEMPLATE_OUTPUT, *_WEB),
    _read(
        "run", "list",
        "--limit", "-L", *_JSON_OUTPUT, "--branch", "-b", "--workflow", "-w",
        "--status", "-s", "--event", "-e", "--user", "-u", "--commit", "-c",
    ),
    _read(
        "run", "view",
        *_JSON_OUTPUT, "--log", "--log-failed", "--exit-status", "--verbose", "-v",
        *_WEB, "--job", "-j", "--attempt",
    ),
    # Write commands: workspace repository only, no --body-file/-F (host file read)
    _write(
        "pr", "create",
        "--title", "-t", "--body", "-b", "--base", "-B", "--head", "-H",
        "--draft", "-d", "--label", "-l", "--assignee", "-a", "--reviewer", "-r",
        "--milestone", "-m", "--fill", "-f", "--fill-first", "--fill-verbose",
        *_WEB, "--template", "-T", "--no-maintainer-edit",
    ),
    _write("pr", "comment", "--body", "-b", "--edit-last", *_WEB),
    _write(
        "issue", "create",
        "--title", "-t", "--body", "-b", "--label", "-l", "--assignee", "-a",
        "--milestone", "-m", "--project", "-p", *_WEB, "--template", "-T",
    ),
    _write("issue", "comment", "--body", "-b", "--edit-last", *_WEB),
)

DEFAULT_EXTENSIONS: tuple[ExtensionCommand, ...] = (
    ExtensionCommand(
        group="ext",
        subcommand="run-logs",
        description="Download workflow run logs",
        help_text=(
            "gh ext run-logs <run-id> (workspace repo only)\n\n"
            "Download workflow run logs for the current repository.\n"
            "Translates to: gh api /repos/{owner}/{repo}/actions/runs/{run-id}/logs\n"
        ),
        handler=handle_run_logs,
    ),
)

DEFAULT_POLICY = PolicyTable(DEFAULT_RULES, DEFAULT_EXTENSIONS)
