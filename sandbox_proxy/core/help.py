"""Help text for the restricted gh surface, derived from the policy table."""

from __future__ import annotations

from typing import Sequence

from sandbox_proxy.core.policy import PolicyTable

HELP_FLAGS = frozenset({"-h", "--help"})


def is_help_flag(arg: str) -> bool:
    return arg in HELP_FLAGS


def format_flags(flags: Sequence[str]) -> list[str]:
    """Pair short and long spellings for display, e.g. "  -s, --state".

    Policy rules list a long flag followed by its short alias, so a long flag
    is paired with a short flag immediately after it.
    """
    lines: list[str] = []
    i = 0
    while i < len(flags):
        flag = flags[i]
        if not flag.startswith("--"):
            lines.append(f"  {flag}")
            i += 1
            continue
        following = flags[i + 1] if i + 1 < len(flags) else ""
        if following.startswith("-") and not following.startswith("--"):
            lines.append(f"  {following}, {flag}")
            i += 2
            continue
        lines.append(f"      {flag}")
        i += 1
    return lines


def help_toplevel(policy: PolicyTable) -> str:
    out = "gh - GitHub CLI (proxy, restricted subset)\n\nAvailable command groups:\n"
    for group in policy.groups():
        subs = [r.subcommand for r in policy.rules_for_group(group)]
        subs += [e.subcommand for e in policy.extensions_for_group(group)]
        out += f"  {group:<12} {', '.join(subs)}\n"
    out += "\nRun 'gh <command> -h' for more information about a command.\n"
    out += "Note: This is a sandboxed proxy. Only the commands listed above are available.\n"
    return out


def help_group(policy: PolicyTable, group: str) -> str | None:
    rules = policy.rules_for_group(group)
    exts = policy.extensions_for_group(group)
    if not rules and not exts:
        return None

    out = f"gh {group} - available subcommands:\n\n"
    for rule in rules:
        marker = " (write)" if rule.is_write else ""
        out += f"  {rule.subcommand:<12}{marker}\n"
    for ext in exts:
        out += f"  {ext.subcommand:<12} {ext.description}\n"
    out += f"\nRun 'gh {group} <subcommand> -h' for more information.\n"
    return out


def help_command(policy: PolicyTable, group: str, subcommand: str) -> str | None:
    ext = policy.find_extension(group, subcommand)
    if ext is not None:
        return ext.help_text

    rule = policy.find_rule(group, subcommand)
    if rule is None:
        return None

    scope = " (write - workspace repo only, no -R/--repo)" if rule.is_write else " (read)"
    lines = format_flags(rule.allowed_flags)
    return f"gh {group} {subcommand}{scope}\n\nAllowed flags:\n" + "".join(
        f"{line}\n" for line in lines
    )


def maybe_help(policy: PolicyTable, args: Sequence[str]) -> str | None:
    """Return help text if args is a help request, else None.

    Help for an unknown subcommand returns None so the request is denied by
    the validator like any other unknown command.
    """
    if not args:
        return help_toplevel(policy)

    if len(args) == 1 and (is_help_flag(args[0]) or args[0] == "help"):
        return help_toplevel(policy)

    if args[0] == "help":
        if len(args) == 2:
            return help_group(policy, args[1]) or help_toplevel(policy)
        return help_command(policy, args[1], args[2]) or help_group(policy, args[1])

    if len(args) == 2 and is_help_flag(args[1]):
        return help_group(policy, args[0]) or help_toplevel(policy)

    if len(args) >= 2 and any(is_help_flag(a) for a in args[2:]):
        return help_command(policy, args[0], args[1])

    return None
