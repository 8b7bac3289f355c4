"""Output formatting utilities for the CLI."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import questionary
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from qsrls.cli.common.tui_style import QUESTIONARY_STYLE_CONFIRM

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

console = Console(theme=_THEME)


def _flag(value: bool) -> str:
    return "[ok]yes[/]" if value else "[meta]no[/]"


@dataclass(frozen=True)
class Out:
    """Output formatter for CLI messages and tables."""

    def _q(self, message: str) -> str:
        """Prefix Questionary prompts to be QSRLS consistent."""
        return f"[QSRLS] {message}"

    def info(self, msg: str) -> None:
        """Print an info message."""
        console.print(f"[title]›[/] {escape(msg)}")

    @contextmanager
    def status(self, msg: str):
        """Show a transient status spinner while work is in progress."""
        with console.status(msg, spinner="dots"):
            yield

    def success(self, msg: str) -> None:
        console.print(f"[ok]✓[/] {escape(msg)}")

    def warn(self, msg: str) -> None:
        console.print(f"[warn]⚠[/] {escape(msg)}")

    def error(self, msg: str) -> None:
        console.print(f"[err]✗[/] {escape(msg)}")

    def header(self, title: str) -> None:
        console.print(f"[title]{title}[/]")

    def raw(self, text: str) -> None:
        """Print text verbatim (no markup, no highlighting)."""
        console.print(text, markup=False, highlight=False, soft_wrap=True)

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print key-value pairs."""
        for k, v in items.items():
            console.print(f"[meta]{k}[/]: {escape(str(v))}")

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """
        Ask the user for confirmation using a standardized Questionary prompt.

        Returns:
            True if the user confirms, False otherwise (including Ctrl-C).
        """
        console.print("[meta]Use y/n then Enter[/]")
        prompt = questionary.confirm(
            self._q(message),
            default=default,
            style=QUESTIONARY_STYLE_CONFIRM,
            qmark="✦",
            auto_enter=False,
        )
        return bool(prompt.ask())

    def sync_results_table(self, results: Iterable[Any], title: str = "Sync results") -> None:
        """
        Expects objects with .entity .outcome and per-action counters
        (like qsrls.core.reconcile.SyncResult)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Entity", style="title", no_wrap=True)
        t.add_column("Created", justify="right")
        t.add_column("Updated", justify="right")
        t.add_column("Unchanged", justify="right", style="meta")
        t.add_column("Deleted", justify="right")
        t.add_column("Cascaded", justify="right")
        t.add_column("Skipped", justify="right", style="meta")
        t.add_column("Result")

        for r in results:
            result = "[ok]OK[/]" if r.outcome.ok else f"[err]FAIL[/] {r.outcome.error_type or ''}"
            t.add_row(
                r.entity,
                str(r.created),
                str(r.updated),
                str(r.unchanged),
                str(r.deleted),
                str(r.cascaded),
                str(r.skipped),
                result,
            )

        console.print(t)

    def regions_table(self, regions: Iterable[Any], title: str = "Managed regions") -> None:
        """Expects ManagedRegion records."""
        t = Table(title=title, show_lines=False)
        t.add_column("Region", style="ok", no_wrap=True)
        t.add_column("Bucket")
        t.add_column("Glue database")
        t.add_column("Data source")
        t.add_column("Datasets", justify="right")
        t.add_column("Not manageable", justify="right", style="meta")
        t.add_column("RLS datasets", justify="right")
        t.add_column("SPICE used/available (GB)", justify="right")

        for r in regions:
            t.add_row(
                r.region_name,
                r.bucket_name,
                r.catalog_db_name,
                r.data_source_name,
                str(r.datasets_count),
                str(r.not_manageable_datasets_count),
                str(r.tool_created_count),
                f"{r.used_capacity_gb:.2f}/{r.available_capacity_gb:.2f}",
            )

        console.print(t)

    def datasets_table(self, datasets: Iterable[Any], title: str = "Datasets") -> None:
        """Expects Dataset records."""
        t = Table(title=title, show_lines=False)
        t.add_column("Dataset ID", style="ok", no_wrap=True)
        t.add_column("Name")
        t.add_column("RLS")
        t.add_column("Managed")
        t.add_column("API", style="meta")
        t.add_column("Fields", justify="right", style="meta")

        for d in datasets:
            rls = d.rls_enabled.value if hasattr(d.rls_enabled, "value") else str(d.rls_enabled)
            t.add_row(
                d.id,
                d.name,
                f"[ok]{rls}[/]" if rls == "ENABLED" else f"[meta]{rls}[/]",
                _flag(d.rls_tool_managed),
                _flag(d.api_manageable),
                str(len(d.fields)),
            )

        console.print(t)

    def permissions_table(self, permissions: Iterable[Any], title: str = "Permissions") -> None:
        """Expects Permission records."""
        t = Table(title=title, show_lines=False)
        t.add_column("Principal", style="ok")
        t.add_column("Field")
        t.add_column("Values", style="meta")

        for p in permissions:
            t.add_row(p.principal_arn, p.field, p.rls_values)

        console.print(t)

    def stages_table(self, history: Iterable[tuple[Any, Any]], title: str = "Publish stages") -> None:
        """
        Expects tuples of (Stage, Outcome)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Stage", style="title", no_wrap=True, justify="right")
        t.add_column("Step")
        t.add_column("Result")

        for stage, outcome in history:
            style = "ok" if outcome.ok else "err"
            t.add_row(str(stage.value), stage.label, f"[{style}]{escape(outcome.message)}[/{style}]")

        console.print(t)


out = Out()
