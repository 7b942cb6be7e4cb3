"""Console rendering and progress helpers for the photo-migrator CLI."""
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .models import BatchDescriptor, ItemStatus, MediaClass
from .orchestrator.models import CycleResult, StatusReport
from .utils.events import (
    BATCH_FINISHED,
    BATCH_STARTED,
    ITEM_TRANSITIONED,
    EventEmitter,
    ItemTransition,
)

console = Console()

STATUS_STYLES = {
    ItemStatus.PENDING: "white",
    ItemStatus.STAGED: "cyan",
    ItemStatus.UPLOADING: "blue",
    ItemStatus.COMMITTED: "green",
    ItemStatus.FAILED: "red",
    ItemStatus.SKIPPED: "yellow",
}


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any]) -> None:
    """Render startup configuration summary."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]photo-migrator[/bold green]",
        subtitle="[dim]upload orchestration[/dim]",
        border_style="blue",
    )
    console.print(panel)


def render_plan(batch: BatchDescriptor, items: Optional[List[Any]] = None, limit: int = 15) -> None:
    """Render a planned batch and a sample of its items."""
    header = Table.grid(padding=(0, 2))
    header.add_column(style="bold cyan", justify="right")
    header.add_column()
    header.add_row("Items", str(batch.item_count))
    header.add_row("Size", f"{_human_size(batch.total_bytes)} of {_human_size(batch.limit_bytes)} limit")
    header.add_row("Deferred", str(len(batch.deferred)))
    console.print(Panel(header, title="[bold]Next batch[/bold]", border_style="cyan"))

    if items:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Item")
        table.add_column("Class")
        table.add_column("Size", justify="right")
        table.add_column("Status")
        for item in items[:limit]:
            style = STATUS_STYLES.get(item.status, "white")
            table.add_row(
                item.filename,
                item.media_class.value,
                _human_size(item.size_bytes),
                f"[{style}]{item.status.value}[/{style}]",
            )
        if len(items) > limit:
            table.add_row(f"[dim]... {len(items) - limit} more[/dim]", "", "", "")
        console.print(table)

    if batch.deferred:
        console.print(
            f"[yellow]{len(batch.deferred)} item(s) are larger than the usable disk space "
            f"and were deferred.[/yellow]"
        )


def render_status(report: StatusReport) -> None:
    counts = Table(title="Items by status", show_header=True, header_style="bold")
    counts.add_column("Status")
    counts.add_column("Count", justify="right")
    for status in ItemStatus:
        style = STATUS_STYLES[status]
        counts.add_row(f"[{style}]{status.value}[/{style}]", str(report.counts.get(status, 0)))
    counts.add_row("[bold]total[/bold]", f"[bold]{report.total}[/bold]")
    console.print(counts)

    remaining = ", ".join(
        f"{media_class.value}s: {report.pending_by_class.get(media_class, 0)}" for media_class in MediaClass
    )
    console.print(f"Remaining to upload: {remaining}")
    auth = "[green]yes[/green]" if report.authenticated else "[red]no (run 'photo-migrator login')[/red]"
    console.print(f"Authenticated: {auth}")

    if report.failed_items:
        failed = Table(title="Failed items", show_header=True, header_style="bold red")
        failed.add_column("Item")
        failed.add_column("Retries", justify="right")
        failed.add_column("Reason")
        for item in report.failed_items:
            failed.add_row(item.id, str(item.retry_count), item.last_error or "-")
        console.print(failed)

    if report.review_items:
        console.print(
            f"[yellow]{len(report.review_items)} item(s) flagged as possible visual duplicates "
            f"for review.[/yellow]"
        )

    if report.recent_batches:
        batches = Table(title="Recent batches", show_header=True, header_style="bold")
        batches.add_column("Batch")
        batches.add_column("Created")
        batches.add_column("Items", justify="right")
        batches.add_column("Size", justify="right")
        batches.add_column("Status")
        for batch in report.recent_batches:
            batches.add_row(
                batch.id[:8],
                batch.created_at.strftime("%Y-%m-%d %H:%M") if batch.created_at else "-",
                str(batch.item_count),
                _human_size(batch.total_bytes),
                batch.status.value,
            )
        console.print(batches)


def render_run_summary(results: List[CycleResult]) -> None:
    committed = sum(r.committed for r in results)
    skipped = sum(r.skipped_duplicates for r in results)
    failed = sum(r.failed for r in results)
    downloading = sum(r.still_downloading for r in results)
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()
    table.add_row("Cycles", str(len(results)))
    table.add_row("Committed", f"[green]{committed}[/green]")
    table.add_row("Duplicates", f"[yellow]{skipped}[/yellow]")
    table.add_row("Failed", f"[red]{failed}[/red]")
    if downloading:
        table.add_row("Still downloading", str(downloading))
    halted = next((r.halted_reason for r in results if r.halted), None)
    if halted:
        table.add_row("Halted", f"[red]{halted}[/red]")
    console.print(Panel(table, title="[bold]Upload summary[/bold]", border_style="green"))


class BatchProgressDisplay:
    """Event-based console display for upload cycles."""

    SETTLED = (ItemStatus.COMMITTED, ItemStatus.SKIPPED, ItemStatus.FAILED)

    def __init__(self):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=36),
            TextColumn("{task.completed}/{task.total}"),
            TextColumn("[dim]{task.fields[detail]}", justify="left"),
            TimeElapsedColumn(),
            expand=False,
            console=console,
        )
        self._live: Optional[Live] = None
        self._task_id: Optional[TaskID] = None
        self._stats: Dict[str, int] = {"committed": 0, "skipped": 0, "failed": 0, "requeued": 0}

    def attach(self, events: EventEmitter) -> None:
        events.on(BATCH_STARTED, self.on_batch_started)
        events.on(ITEM_TRANSITIONED, self.on_item_transitioned)
        events.on(BATCH_FINISHED, self.on_batch_finished)

    def detach(self, events: EventEmitter) -> None:
        events.off(BATCH_STARTED, self.on_batch_started)
        events.off(ITEM_TRANSITIONED, self.on_item_transitioned)
        events.off(BATCH_FINISHED, self.on_batch_finished)

    def _emit_timeline(self, status: str, name: str, size_bytes: int = 0, error: Optional[str] = None) -> None:
        stamp = time.strftime("%H:%M:%S")
        size_label = f" {_human_size(size_bytes)}" if size_bytes > 0 else ""
        error_label = f" cause={error}" if error else ""
        palette = {"DONE": "green", "FAIL": "red", "SKIP": "yellow", "RETRY": "magenta", "INFO": "blue"}
        color = palette.get(status, "white")
        console.print(f"[dim]{stamp}[/dim] [{color}]{status:<5}[/{color}] {name}{size_label}{error_label}")

    def _detail(self) -> str:
        return " ".join(f"{key}={value}" for key, value in self._stats.items())

    def on_batch_started(self, batch: BatchDescriptor) -> None:
        self._stats = {key: 0 for key in self._stats}
        if self._live is None:
            self._live = Live(self._progress, console=console, refresh_per_second=8)
            self._live.start()
        if self._task_id is not None:
            self._progress.remove_task(self._task_id)
        self._task_id = self._progress.add_task(
            "batch",
            label=f"Batch {batch.id[:8]}",
            total=max(batch.item_count, 1),
            completed=0,
            detail=_human_size(batch.total_bytes),
        )

    def on_item_transitioned(self, change: ItemTransition) -> None:
        if change.to_status == ItemStatus.COMMITTED:
            self._stats["committed"] += 1
            self._emit_timeline("DONE", change.filename, change.size_bytes)
        elif change.to_status == ItemStatus.SKIPPED:
            self._stats["skipped"] += 1
            self._emit_timeline("SKIP", change.filename, error=change.reason)
        elif change.to_status == ItemStatus.FAILED:
            self._stats["failed"] += 1
            self._emit_timeline("FAIL", change.filename, error=change.reason)
        elif change.from_status == ItemStatus.UPLOADING and change.to_status == ItemStatus.STAGED:
            self._stats["requeued"] += 1
            self._emit_timeline("RETRY", change.filename, error=change.reason)
        else:
            return

        if self._task_id is not None:
            settled = self._stats["committed"] + self._stats["skipped"] + self._stats["failed"]
            self._progress.update(
                self._task_id,
                completed=settled + self._stats["requeued"],
                detail=self._detail(),
            )

    def on_batch_finished(self, result: CycleResult) -> None:
        if self._task_id is not None:
            self._progress.update(self._task_id, detail=f"{result.status.value} {self._detail()}")
        self.close()

    def close(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None
