"""Progress formatting utilities for the CLI."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from qsrls.cli.common.output import console
from qsrls.core.errors import Outcome
from qsrls.core.pipeline import Stage


@contextmanager
def publish_progress(title: str) -> Iterator[Callable[[Stage, Outcome], None]]:
    """
    Show a spinner with elapsed time while the publish pipeline runs.

    Yields the `on_stage` callback for `publish_rls`; every finished stage is
    printed above the spinner.
    """
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}[/]"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    task_id = progress.add_task(title, total=None)

    def on_stage(stage: Stage, outcome: Outcome) -> None:
        mark = "[ok]✓[/]" if outcome.ok else "[err]✗[/]"
        progress.console.print(f"{mark} [meta]stage {stage.value}[/] {stage.label}")
        progress.update(task_id, description=f"{title} (last: {stage.label.lower()})")

    with progress:
        yield on_stage
