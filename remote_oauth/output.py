"""Output formatting for human-readable and JSON modes."""

import json
import sys
from typing import Any

import click


def format_json(data: Any) -> str:
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON. Only the message is included, never response bodies."""
    return json.dumps(
        {
            "success": False,
            "error": {
                "type": error_type or type(error).__name__,
                "message": str(error),
                "help": help_text or "",
            },
        },
        indent=2,
    )


class OutputHandler:
    """Routes command output to JSON or human formatting."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message is not None:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def info(self, message: str) -> None:
        """Progress message for humans; goes to stderr and is dropped in JSON mode."""
        if not self.json_mode:
            click.echo(message, err=True)

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Report an error and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def fields(self, title: str, rows: list[tuple[str, Any]]) -> str:
        """Render aligned ``label: value`` lines under a title."""
        width = max((len(label) for label, _ in rows), default=0)
        lines = [click.style(title, bold=True)]
        for label, value in rows:
            lines.append(f"  {label.ljust(width)}  {value if value is not None else '-'}")
        return "\n".join(lines)
