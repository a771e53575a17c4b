"""
blunder Terminal UI
===================
Rich terminal rendering of proxy results: status line, headers table and a
collapsible-style JSON tree.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme
from rich.tree import Tree

from blunder import __version__
from blunder.core.interpret import BINARY_NOTICE, NO_HEADERS, JsonNode, ResponseView

# ── Theme ────────────────────────────────────────────────────────────────────

BLUNDER_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_white",
    "dim": "dim white",
    "json.key": "grey62",
    "json.null": "grey50",
    "json.string": "green",
    "json.number": "sky_blue2",
    "json.boolean": "medium_purple1",
    "json.summary": "grey50",
})

console = Console(theme=BLUNDER_THEME)

BANNER_SMALL = (
    f"[title]bc[/] [bold]blunder client[/] [dim]v{__version__}[/] "
    "[dim]|[/] [dim]Minimal API client[/]"
)


def show_banner() -> None:
    console.print(BANNER_SMALL)


# ── Messages ─────────────────────────────────────────────────────────────────

def print_error(text: str) -> None:
    console.print(f"[error]✗ {escape(text)}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✓ {escape(text)}[/]")


def print_info(text: str) -> None:
    console.print(f"[info]ℹ {escape(text)}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠ {escape(text)}[/]")


# ── Config ───────────────────────────────────────────────────────────────────

def show_config_status(config: Dict[str, Any]) -> None:
    """Display configuration status."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")
    for key, value in config.items():
        table.add_row(key, str(value))
    console.print(Panel(table, title="[title]Configuration[/]", border_style="green"))


# ── Response ─────────────────────────────────────────────────────────────────

def json_tree_to_rich(node: JsonNode, tree: Optional[Tree] = None) -> Tree:
    """Convert a JsonNode view model into a rich Tree."""
    label = Text()
    label.append(node.label, style="json.key")
    label.append(": ", style="dim")
    if node.is_container:
        label.append(node.display, style="json.summary")
    else:
        label.append(node.display, style=f"json.{node.kind}")

    branch = tree.add(label) if tree is not None else Tree(label)
    if node.is_container:
        if not node.children:
            branch.add(Text(node.empty_label, style="dim"))
        elif not node.open:
            branch.add(Text(f"… {len(node.children)} item(s)", style="dim"))
        else:
            for child in node.children:
                json_tree_to_rich(child, branch)
    return branch


def show_status(view: ResponseView) -> None:
    status_style = "success" if view.ok else "error"
    line = Text()
    line.append(f" {view.status_line} ", style=f"{status_style} reverse")
    line.append(f"  {view.duration_label}", style="dim")
    line.append(f"  {view.bytes} bytes", style="dim")
    if view.truncated:
        line.append(" (truncated)", style="warning")
    console.print(line)
    if view.content_type:
        console.print(f"[dim]{escape(view.content_type)}[/]")


def show_headers(view: ResponseView) -> None:
    table = Table(title="Headers", show_header=False, box=None, padding=(0, 2))
    table.add_column("Name", style="dim", no_wrap=True)
    table.add_column("Value")
    if not view.headers:
        table.add_row(NO_HEADERS, "")
    for name, value in view.headers:
        table.add_row(name, value)
    console.print(table)


def show_body(view: ResponseView) -> None:
    if view.tree is not None:
        console.print(json_tree_to_rich(view.tree))
    elif view.pretty is not None:
        console.print(Panel(Text(view.pretty), border_style="dim", expand=False))
    else:
        console.print(f"[dim]{BINARY_NOTICE}[/]")
        console.print(Panel(Text(view.body_base64 or ""), border_style="dim", expand=False))


def show_response(view: ResponseView, headers: bool = True) -> None:
    """Render a full interpreted proxy result."""
    if view.is_error:
        print_error(view.error)
        return
    show_status(view)
    if headers:
        console.print()
        show_headers(view)
    console.print()
    show_body(view)
