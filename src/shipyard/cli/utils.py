"""
CLI utility helpers -- platform construction and output formatting.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from shipyard.core.errors import ShipyardError
from shipyard.core.settings import get_settings
from shipyard.platform import Platform

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def build_platform() -> Platform:
    """Wire a platform from ``SHIPYARD_*`` settings."""
    return Platform.from_settings(get_settings())


def run_with_platform(action: Callable[[Platform], Awaitable[T]]) -> T:
    """Build a platform inside a fresh event loop, run ``action``, shut down.

    Shipyard errors are printed and turned into exit code 1.
    """

    async def _main() -> T:
        platform = build_platform()
        try:
            return await action(platform)
        finally:
            await platform.shutdown(timeout=5.0)

    try:
        return asyncio.run(_main())
    except ShipyardError as exc:
        err_console.print(f"[red]Error:[/] {exc.message}")
        raise typer.Exit(code=1) from exc


# -- Output helpers ------------------------------------------------------


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert pydantic model / dataclass / dict to a JSON-ready dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def print_json(obj: Any) -> None:
    if isinstance(obj, list):
        payload: Any = [_to_dict(o) for o in obj]
    else:
        payload = _to_dict(obj)
    typer.echo(json.dumps(payload, indent=2, default=str))


def print_table(title: str, columns: list[str], rows: list[list[Any]]) -> None:
    if not rows:
        console.print(f"[dim]No {title.lower()}.[/]")
        return
    table = Table(title=title, show_lines=False)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*[str(v) if v is not None else "" for v in row])
    console.print(table)
