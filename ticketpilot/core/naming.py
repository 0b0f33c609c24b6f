"""Deterministic names derived from ticket attributes."""

import re

PR_TITLE_MAX_SUMMARY = 72

_WHITESPACE = re.compile(r"\s+")


def branch_name(ticket_key: str, prefix: str = "ticketpilot", kind: str = "feature") -> str:
    """Branch for a ticket, e.g. ``ticketpilot/feature/proj-123``."""
    sanitized = ticket_key.strip().lower().replace(" ", "-").replace("_", "-")
    return f"{prefix.rstrip('/')}/{kind}/{sanitized}"


def pr_title(ticket_key: str, summary: str) -> str:
    """Pull request title, e.g. ``PROJ-123: Fix login redirect``."""
    clean = _WHITESPACE.sub(" ", summary).strip()
    if len(clean) > PR_TITLE_MAX_SUMMARY:
        clean = clean[: PR_TITLE_MAX_SUMMARY - 3].rstrip() + "..."
    return f"{ticket_key}: {clean}"


def commit_message(ticket_key: str, summary: str, changed_paths: list[str]) -> str:
    lines = [pr_title(ticket_key, summary), ""]
    lines.extend(f"- {path}" for path in changed_paths)
    return "\n".join(lines).rstrip()
