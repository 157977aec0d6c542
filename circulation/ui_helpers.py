import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, str]  # (record key, header)


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def print_rows(rows: List[Dict[str, Any]], columns: Sequence[Column], title: str, empty_message: str) -> None:
    """Print a listing in the current output mode.

    - plain: one ``a | b | c`` line per row, or ``empty_message``
    - json: the rows as a JSON array
    - rich: a Rich table
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
        return
    if not rows:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for row in rows:
            table.add_row(*(_cell(row.get(key)) for key, _ in columns))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join(_cell(row.get(key)) for key, _ in columns))


def print_record(record: Dict[str, Any], title: str) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(record, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {_cell(value)}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="green"))
    else:
        print(title)
        for key, value in record.items():
            print(f"{key}: {_cell(value)}")


def print_error(kind: str, message: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"kind": kind, "message": message}, ensure_ascii=False))
    else:
        print(f"Error [{kind}]: {message}")
