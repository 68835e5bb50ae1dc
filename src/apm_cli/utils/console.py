"""Console utility functions for formatting and output."""

import click
from typing import Optional, Any, Sequence

from colorama import Fore, Style, init
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

init(autoreset=True)


# Status symbols for consistent iconography
STATUS_SYMBOLS = {
    'success': '✨',
    'check': '✅',
    'info': '💡',
    'warning': '⚠️',
    'error': '❌',
    'running': '🚀',
    'list': '📋',
    'tree': '🌳',
    'lock': '🔒',
    'conflict': '🔀',
    'cycle': '🔁',
}

_COLORAMA_COLORS = {
    'red': Fore.RED,
    'green': Fore.GREEN,
    'yellow': Fore.YELLOW,
    'blue': Fore.BLUE,
    'cyan': Fore.CYAN,
    'white': Fore.WHITE,
    'magenta': Fore.MAGENTA,
    'muted': Fore.WHITE,
}


def _get_console() -> Console:
    """Get a Rich console bound to the current stdout."""
    return Console(soft_wrap=True)


def _rich_echo(message: str, color: str = "white", style: str = None, bold: bool = False, symbol: str = None):
    """Echo message with Rich formatting or colorama fallback."""
    if style is not None:
        color = style

    if symbol and symbol in STATUS_SYMBOLS:
        message = f"{STATUS_SYMBOLS[symbol]} {message}"

    try:
        style_str = f"bold {color}" if bold else color
        _get_console().print(message, style=style_str, markup=False, highlight=False)
        return
    except Exception:
        # Unknown style names or a broken terminal; plain colorama still works
        pass

    color_code = _COLORAMA_COLORS.get(color, Fore.WHITE)
    style_code = Style.BRIGHT if bold else ""
    click.echo(f"{color_code}{style_code}{message}{Style.RESET_ALL}")


def _rich_success(message: str, symbol: str = None):
    """Display success message with green color and bold styling."""
    _rich_echo(message, color="green", symbol=symbol, bold=True)


def _rich_error(message: str, symbol: str = None):
    """Display error message with red color."""
    _rich_echo(message, color="red", symbol=symbol)


def _rich_warning(message: str, symbol: str = None):
    """Display warning message with yellow color."""
    _rich_echo(message, color="yellow", symbol=symbol)


def _rich_info(message: str, symbol: str = None):
    """Display info message with blue color."""
    _rich_echo(message, color="blue", symbol=symbol)


def _rich_panel(content: str, title: str = None, style: str = "cyan"):
    """Display content in a Rich panel with fallback."""
    try:
        _get_console().print(Panel(content, title=title, border_style=style))
        return
    except Exception:
        pass

    if title:
        click.echo(f"\n--- {title} ---")
    click.echo(content)
    if title:
        click.echo("-" * (len(title) + 8))


def _create_table(title: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> Table:
    """Create a Rich table with one styled header row."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    for i, column in enumerate(columns):
        table.add_column(column, style="bold white" if i == 0 else "white", overflow="fold")
    for row in rows:
        table.add_row(*[str(cell) if cell is not None else "-" for cell in row])
    return table


def _print_renderable(renderable: Any, fallback_lines: Optional[Sequence[str]] = None):
    """Print a Rich renderable, or plain lines if Rich cannot render."""
    try:
        _get_console().print(renderable)
        return
    except Exception:
        if fallback_lines is None:
            raise
    for line in fallback_lines:
        click.echo(line)


def _create_tree(label: str) -> Tree:
    """Create the root of a Rich tree."""
    return Tree(label)
