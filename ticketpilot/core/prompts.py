"""Prompt construction for solution generation."""

import json
from typing import Any

from .results import TicketData

SOLUTION_SYSTEM_PROMPT = """You are a senior software engineer resolving a ticket in an existing repository.

Rules:
1. Change only what the ticket requires
2. Follow the conventions already present in the repository
3. Keep changes small enough to review in one sitting
4. Never include secrets, credentials or generated binaries

Output Format:
Return a single JSON object:
{
  "summary": "one paragraph describing the change",
  "changes": [
    {
      "path": "relative/path/to/file",
      "action": "create_file" | "edit_file" | "delete_file",
      "content": "complete new file content (omit for delete_file)",
      "description": "why this file changes"
    }
  ],
  "commands": ["optional shell commands to run after the changes, e.g. formatters"]
}
"""


def build_solution_prompt(
    ticket: TicketData,
    todos: list[dict[str, Any]] | None = None,
    repository_context: dict[str, Any] | None = None,
) -> str:
    """User message describing the ticket, its todos and the target repository."""
    sections = [
        f"# Ticket {ticket.key}: {ticket.summary}",
        "",
        f"**Priority**: {ticket.priority or 'unspecified'}",
        f"**Labels**: {', '.join(ticket.labels) if ticket.labels else 'none'}",
        "",
        "## Description",
        ticket.description.strip() or "(no description)",
    ]

    if todos:
        sections += ["", "## Work breakdown"]
        for index, todo in enumerate(todos, start=1):
            sections.append(f"{index}. {todo['title']}: {todo.get('description', '')}".rstrip(": "))
            for criterion in todo.get("acceptance_criteria", []):
                sections.append(f"   - {criterion}")

    if repository_context:
        sections += ["", "## Repository", json.dumps(repository_context, indent=2, default=str)]

    sections += [
        "",
        "## Constraints",
        "- Respond with the JSON object only",
        "- Use paths relative to the repository root",
    ]
    return "\n".join(sections)
