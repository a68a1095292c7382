"""Tests for the gh command validator.

Tests cover:
- Allowed read and write commands
- Repository selector handling for write scope
- Flag allowlist enforcement (--flag=value, --, short clusters)
- Unsupported commands and malformed vectors
- Help and extension routing
"""

from __future__ import annotations

import pytest

from sandbox_proxy.core.models import Allow, Deny, PlanKind, PolicyDenied
from sandbox_proxy.core.policy import PolicyRule, PolicyTable
from sandbox_proxy.core.validator import (
    CommandValidator,
    find_disallowed_flag,
    find_repo_selector,
    flag_name,
    validate,
)


@pytest.fixture
def validator() -> CommandValidator:
    return CommandValidator()


# =============================================================================
# Allowed Command Tests
# =============================================================================


class TestAllowedCommands:
    """Requests the default policy lets through unchanged."""

    @pytest.mark.parametrize(
        "args",
        [
            ["pr", "list"],
            ["pr", "list", "--state", "open"],
            ["pr", "view", "123", "--json", "title"],
            ["pr", "diff", "123"],
            ["pr", "checks", "123"],
            ["issue", "list", "--limit", "10"],
            ["issue", "view", "42", "--comments"],
            ["repo", "view", "--json", "description"],
            ["release", "list"],
            ["release", "view", "v1.0"],
            ["run", "list"],
            ["run", "view", "12345", "--log"],
        ],
    )
    def test_read_commands_allowed(self, validator, args):
        decision = validator.validate(args)
        assert isinstance(decision, Allow)
        assert decision.plan.kind == PlanKind.PASSTHROUGH

    @pytest.mark.parametrize(
        "args",
        [
            ["pr", "list", "-R", "owner/repo"],
            ["pr", "list", "--repo", "owner/repo"],
            ["issue", "view", "1", "--repo=owner/repo"],
        ],
    )
    def test_read_commands_allow_repo_flag(self, validator, args):
        assert validator.validate(args).allowed

    @pytest.mark.parametrize(
        "args",
        [
            ["pr", "create", "--title", "foo", "--body", "bar"],
            ["pr", "comment", "123", "--body", "hi"],
            ["issue", "create", "--title", "bug"],
            ["issue", "comment", "42", "--body", "x"],
        ],
    )
    def test_write_commands_allowed(self, validator, args):
        assert validator.validate(args).allowed

    def test_plan_carries_exact_args(self, validator):
        """Passthrough plans keep the request vector verbatim."""
        args = ["pr", "view", "; rm -rf /", "--json", "$(whoami)"]
        decision = validator.validate(args)
        assert decision.allowed
        assert decision.plan.args == tuple(args)
        assert decision.plan.rule.key == ("pr", "view")

    def test_positional_values_are_not_inspected(self, validator):
        assert validator.validate(["release", "view", "v1.0.0"]).allowed
        assert validator.validate(["pr", "comment", "1", "--body", "see -R owner/repo"]).allowed


# =============================================================================
# Write Scope Tests
# =============================================================================


class TestWriteScope:
    """Write commands always target the workspace repository."""

    def test_pr_create_with_repo_denied(self, validator):
        decision = validator.validate(["pr", "create", "--repo", "other/repo"])
        assert isinstance(decision, Deny)
        assert "repository selector" in decision.reason
        assert "--repo" in decision.reason

    @pytest.mark.parametrize(
        "args",
        [
            ["pr", "create", "-R", "other/repo", "--title", "foo"],
            ["pr", "create", "--repo=other/repo"],
            ["issue", "create", "--repo", "other/repo"],
            ["issue", "comment", "1", "-R", "other/repo"],
            ["pr", "create", "--title", "t", "-R=other/repo"],
            ["pr", "comment", "1", "--", "--repo", "x/y"],
            ["pr", "create", "-dR", "x/y"],
        ],
    )
    def test_any_repo_selector_denied(self, validator, args):
        assert not validator.validate(args).allowed

    def test_repo_selector_checked_before_other_flags(self, validator):
        decision = validator.validate(["pr", "create", "--bogus", "--repo", "x/y"])
        assert "repository selector" in decision.reason

    @pytest.mark.parametrize(
        "args",
        [
            ["pr", "create", "--title", "t", "--body-file", "/etc/passwd"],
            ["pr", "comment", "1", "-F", "file.txt"],
            ["issue", "create", "--body-file", "f"],
        ],
    )
    def test_body_file_denied(self, validator, args):
        decision = validator.validate(args)
        assert not decision.allowed
        assert "flag not permitted" in decision.reason


# =============================================================================
# Flag Grammar Tests
# =============================================================================


class TestFlagGrammar:
    """Tests for flag extraction and matching."""

    def test_unknown_flag_denied(self, validator):
        decision = validator.validate(["pr", "list", "--some-future-flag"])
        assert not decision.allowed
        assert decision.reason == "flag not permitted for gh pr list: --some-future-flag"

    def test_long_flag_with_equals(self, validator):
        assert validator.validate(["pr", "list", "--state=open"]).allowed
        assert not validator.validate(["pr", "list", "--bogus=value"]).allowed

    def test_double_dash_ends_flags(self, validator):
        assert validator.validate(["pr", "list", "--", "--not-a-flag"]).allowed

    @pytest.mark.parametrize("token", ["-L5", "-sopen", "-dw"])
    def test_combined_short_forms_denied(self, validator, token):
        decision = validator.validate(["pr", "list", token])
        assert not decision.allowed
        assert "pass short flags separately" in decision.reason

    def test_flag_name(self):
        assert flag_name("--state=open") == "--state"
        assert flag_name("--state") == "--state"
        assert flag_name("-R=x") == "-R=x"
        assert flag_name("-L5") == "-L5"

    def test_find_repo_selector(self):
        assert find_repo_selector(["1", "--body", "x"]) is None
        assert find_repo_selector(["--repository-ish"]) == "--repository-ish"
        assert find_repo_selector(["--", "-R"]) == "-R"
        assert find_repo_selector(["owner-R"]) is None

    def test_find_disallowed_flag_stops_at_double_dash(self):
        rule = PolicyRule("x", "y", ("--ok",))
        assert find_disallowed_flag(["--ok", "--", "--bad"], rule) is None
        assert find_disallowed_flag(["--ok=1", "--bad=2"], rule) == "--bad"


# =============================================================================
# Unsupported Command Tests
# =============================================================================


class TestUnsupportedCommands:
    """Anything not in the table is denied."""

    @pytest.mark.parametrize(
        "args",
        [
            ["api", "repos"],
            ["auth", "login"],
            ["auth", "token"],
            ["secret", "set"],
            ["ssh-key", "list"],
            ["gpg-key", "list"],
            ["pr", "merge", "123"],
            ["pr", "close", "123"],
            ["pr", "edit", "123"],
            ["issue", "close", "42"],
            ["issue", "edit", "42"],
            ["repo", "create"],
            ["repo", "delete"],
            ["release", "create"],
            ["release", "delete"],
            ["run", "rerun"],
            ["run", "cancel"],
        ],
    )
    def test_disallowed_commands(self, validator, args):
        decision = validator.validate(args)
        assert isinstance(decision, Deny)
        assert decision.reason.startswith("unsupported command: gh ")

    def test_repo_delete_reason(self, validator):
        decision = validator.validate(["repo", "delete"])
        assert decision.reason == "unsupported command: gh repo delete"

    def test_single_arg_denied(self, validator):
        decision = validator.validate(["pr"])
        assert not decision.allowed
        assert decision.reason == "unsupported command: gh pr"

    def test_deny_converts_to_exception(self, validator):
        decision = validator.validate(["repo", "delete"])
        assert isinstance(decision.as_exception(), PolicyDenied)

    def test_help_for_unknown_subcommand_denied(self, validator):
        assert not validator.validate(["pr", "merge", "--help"]).allowed


# =============================================================================
# Help and Extension Routing Tests
# =============================================================================


class TestRouting:
    """Help is answered locally; extensions bypass the flag allowlist."""

    @pytest.mark.parametrize(
        "args",
        [[], ["--help"], ["-h"], ["help"], ["pr", "--help"], ["pr", "list", "-h"], ["help", "pr"]],
    )
    def test_help_requests(self, validator, args):
        decision = validator.validate(args)
        assert decision.allowed
        assert decision.plan.kind == PlanKind.HELP
        assert decision.plan.help_text

    def test_extension_routed_with_remaining_args(self, validator):
        decision = validator.validate(["ext", "run-logs", "12345"])
        assert decision.allowed
        assert decision.plan.kind == PlanKind.EXTENSION
        assert decision.plan.args == ("12345",)
        assert decision.plan.extension.name == "ext run-logs"

    def test_extension_args_not_flag_checked(self, validator):
        """The handler validates its own arguments."""
        decision = validator.validate(["ext", "run-logs", "--whatever"])
        assert decision.plan.kind == PlanKind.EXTENSION

    def test_run_logs_is_not_a_passthrough(self, validator):
        assert not validator.validate(["run", "logs"]).allowed

    def test_custom_policy(self):
        table = PolicyTable([PolicyRule("label", "list", ("--limit",))])
        assert validate(["label", "list", "--limit", "3"], table).allowed
        assert not validate(["pr", "list"], table).allowed
