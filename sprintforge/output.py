"""
Rich Output Utilities
=====================

Terminal output for the SprintForge command line: a themed console, status
messages, sprint/task tables and Rich-backed logging.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Theme
# =============================================================================

OK = "#22C55E"
WARN = "#FBBF24"
ERR = "#EF4444"
ACCENT = "#F59E0B"
COOL = "#22D3EE"
DIM = "#9AA4B2"
INK = "#E6E6E6"

# Task, item and sprint status values share one style table
STATUS_STYLES = {
    "queued": INK,
    "planned": INK,
    "planning": INK,
    "awaiting_approval": WARN,
    "running": COOL,
    "in_progress": COOL,
    "active": COOL,
    "completed": f"bold {OK}",
    "done": f"bold {OK}",
    "blocked": f"bold {WARN}",
    "failed": f"bold {ERR}",
    "cancelled": DIM,
}

THEME = Theme({
    "sf.accent": f"bold {ACCENT}",
    "sf.border": COOL,
    "sf.muted": DIM,
    "sf.ok": f"bold {OK}",
    "sf.warn": f"bold {WARN}",
    "sf.err": f"bold {ERR}",
    "sf.info": COOL,
    "sf.key": "#94A3B8",
    "sf.value": INK,
    "sf.number": f"bold {ACCENT}",
    **{f"sf.status.{name}": style for name, style in STATUS_STYLES.items()},
})


def _symbols() -> dict[str, str]:
    """Unicode marks, or ASCII where the console encoding can't show them."""
    encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
    try:
        "✓✗█░".encode(encoding)
    except (UnicodeEncodeError, LookupError):
        return {"ok": "[OK]", "err": "[X]", "warn": "[!]", "info": "[i]", "full": "#", "empty": "-"}
    return {"ok": "✓", "err": "✗", "warn": "!", "info": "•", "full": "█", "empty": "░"}


SYMBOLS = _symbols()

console = Console(theme=THEME)


# =============================================================================
# Messages
# =============================================================================

def print_success(message: str) -> None:
    console.print(f"[sf.ok]{SYMBOLS['ok']} {message}[/]")


def print_error(message: str) -> None:
    console.print(f"[sf.err]{SYMBOLS['err']} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[sf.warn]{SYMBOLS['warn']} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[sf.info]{SYMBOLS['info']} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[sf.muted]{message}[/]")


def print_header(title: str) -> None:
    """Section header framed by a rule."""
    console.print()
    console.print(Rule(f"[sf.accent]{title}[/]", style="sf.accent"))


# =============================================================================
# Tables & Progress
# =============================================================================

def status_text(status: str) -> str:
    """Markup for a task/item/sprint status, coloured by STATUS_STYLES."""
    if status not in STATUS_STYLES:
        return status
    return f"[sf.status.{status}]{status.replace('_', ' ')}[/]"


def print_key_value_table(data: Dict[str, Any]) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="sf.key")
    table.add_column(style="sf.value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


def create_table(*, title: Optional[str] = None, columns: Optional[List[str]] = None) -> Table:
    table = Table(title=title, title_style="sf.accent", header_style=f"bold {COOL}", border_style="sf.border")
    for column in columns or []:
        table.add_column(column)
    return table


def print_table(table: Table) -> None:
    console.print(table)


def print_progress_bar(done: float, total: float, title: str = "Progress", width: int = 30) -> None:
    """One-line bar, e.g. for sprint points completed."""
    if not total:
        print_muted(f"{title}: nothing planned")
        return

    ratio = min(1.0, done / total)
    filled = int(width * ratio)
    colour = "sf.ok" if ratio >= 1 else "sf.info"
    bar = f"[{colour}]{SYMBOLS['full'] * filled}[/][sf.muted]{SYMBOLS['empty'] * (width - filled)}[/]"
    console.print(f"{title}: {bar} [sf.number]{done:g}[/]/{total:g} ({ratio * 100:.0f}%)")


@contextmanager
def spinner(message: str) -> Iterator[Status]:
    """
    Spinner for the duration of a block.

    Usage:
        with spinner("Planning sprint..."):
            plan = await planner.generate_next_sprint(project_id)
    """
    with console.status(f"[sf.accent]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """Route the stdlib logging tree through a RichHandler on the shared console."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)],
        force=True,
    )
