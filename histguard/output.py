"""
Output module for histguard.

Provides consistent output formatting across all commands:
- Pretty (default): Human-readable tables using Rich
- JSONL (--json): Newline-delimited JSON for piping

Usage:
    from histguard.output import emit, emit_error, render_report

    emit(endpoints, output_json=True)
    render_report(report)
"""

import json
import sys
from typing import Any, Dict, Iterable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .domain.plan import PlanReport, StepStatus

STATUS_STYLES = {
    StepStatus.SUCCESS: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "dim",
    StepStatus.DRY_RUN: "yellow",
    StepStatus.ROLLED_BACK: "yellow",
    StepStatus.ROLLBACK_FAILED: "bold red",
    StepStatus.PENDING: "dim",
}

OUTCOME_STYLES = {
    'committed': "bold green",
    'dry_run': "bold yellow",
    'refused': "bold yellow",
    'aborted': "bold red",
    'divergence': "bold red",
    'incomplete': "bold red",
}


def _as_dict(item: Any) -> Dict[str, Any]:
    if hasattr(item, 'to_dict'):
        return item.to_dict()
    if isinstance(item, dict):
        return item
    return {'value': str(item)}


def emit(
    items: Iterable[Any],
    output_json: bool = False,
    columns: Optional[List[str]] = None,
    title: Optional[str] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Emit items as JSONL or a table.

    Args:
        items: Items to emit (should have to_dict() method or be dicts)
        output_json: If True, output JSONL. Otherwise render a table
        columns: Column names for table (auto-detected if None)
        title: Optional table title
    """
    if output_json:
        for item in items:
            print(json.dumps(_as_dict(item), ensure_ascii=False), flush=True)
        return

    rows = [_as_dict(item) for item in items]
    console = console or Console()
    if not rows:
        console.print("No results found")
        return

    columns = columns or _auto_columns(rows)
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*[_format_value(row.get(col, '')) for col in columns])
    console.print(table)


def _auto_columns(rows: List[Dict]) -> List[str]:
    """Auto-detect columns from rows."""
    preferred = ['name', 'timestamp', 'plan', 'outcome', 'exit_code', 'role', 'url', 'auth']
    all_keys = set()
    for row in rows:
        all_keys.update(row.keys())
    columns = [col for col in preferred if col in all_keys]
    for key in sorted(all_keys):
        if key not in columns:
            columns.append(key)
    return columns[:8]


def _format_value(value: Any, max_len: int = 60) -> str:
    """Format a value for table display."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'Yes' if value else 'No'
    if isinstance(value, list):
        s = ', '.join(_format_value(v) for v in value[:3])
        if len(value) > 3:
            s += f' (+{len(value) - 3} more)'
        return s
    if isinstance(value, dict):
        return '{...}'

    s = str(value)
    if len(s) > max_len:
        return s[:max_len-3] + '...'
    return s


def emit_error(
    error: str,
    type: str = "error",
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Emit error to stderr as JSON.

    Args:
        error: Error message
        type: Error type (e.g., "refused", "divergence")
        context: Additional context dict
    """
    obj = {
        'error': error,
        'type': type
    }
    if context:
        obj['context'] = context

    print(json.dumps(obj, ensure_ascii=False), file=sys.stderr, flush=True)


def render_report(report: PlanReport, console: Optional[Console] = None) -> None:
    """
    Print a plan report: one row per step with its rollback outcome,
    followed by the failure (if any) and the exit code.
    """
    console = console or Console(stderr=True)
    prefix = "DRY RUN " if report.dry_run else ""

    table = Table(title=f"{prefix}Plan '{report.plan}'", show_header=True)
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Rollback")
    table.add_column("Details")

    for rec in report.records:
        style = STATUS_STYLES.get(rec.status, "")
        rollback = ""
        if rec.rollback_status is not None:
            rb_style = STATUS_STYLES.get(rec.rollback_status, "")
            rollback = f"[{rb_style}]{rec.rollback_status.value}[/{rb_style}]" if rb_style else rec.rollback_status.value
            if rec.rollback_error:
                rollback += f": {escape(rec.rollback_error)}"
        details = rec.error or rec.message or ""
        table.add_row(rec.step, f"[{style}]{rec.status.value}[/{style}]", rollback, escape(details))

    if report.records:
        console.print(table)

    rewrite = report.context.rewrite
    if rewrite is not None and rewrite.warning is not None:
        console.print(f"[yellow]Warning:[/yellow] {escape(str(rewrite.warning))}")

    outcome = report.outcome
    style = OUTCOME_STYLES.get(outcome, "bold")
    if report.error is not None:
        where = f" in step '{report.failed_step}'" if report.failed_step else ""
        message = str(report.error) or type(report.error).__name__
        console.print(f"[red]Failed{where}:[/red] {escape(message)}")
        if report.rollback_order:
            console.print(f"Rollback order: {' -> '.join(report.rollback_order)}")
        elif report.failed_step:
            console.print("No rollback actions were attempted")
    console.print(f"[{style}]{outcome}[/{style}] (exit code {report.exit_code})")


def emit_report(report: PlanReport, output_json: bool = False, console: Optional[Console] = None) -> None:
    """Emit a plan report as a JSON line or a rendered table."""
    if output_json:
        print(json.dumps(report.to_dict(), ensure_ascii=False), flush=True)
    else:
        render_report(report, console=console)
