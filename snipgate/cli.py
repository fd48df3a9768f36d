"""
snipgate.cli — Operator commands: list, import, export, test-run, diagnostics.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from snipgate.core.exceptions import SnipgateError
from snipgate.core.services import SnippetServices
from snipgate.observability.logger import setup_logging
from snipgate.utils.config import SnipgateConfig

console = Console()

cli = typer.Typer(
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
    no_args_is_help=True,
)

_state: dict[str, str] = {"config_path": "snipgate.yaml"}


def _services() -> SnippetServices:
    config = SnipgateConfig.load(_state["config_path"])
    config.ensure_dirs()
    setup_logging(config.observability)
    return SnippetServices(config)


@cli.callback()
def main(
    config: str = typer.Option("snipgate.yaml", "--config", "-c", help="YAML config file."),
) -> None:
    """Manage stored snippets."""
    _state["config_path"] = config


@cli.command("list")
def list_fragments(trash: bool = typer.Option(False, help="Show trashed snippets.")) -> None:
    """List stored snippets."""
    services = _services()
    fragments = services.store.list(deleted_only=trash)

    table = Table("ID", "Slug", "Kind", "Mode", "Active")
    for f in fragments:
        table.add_row(
            str(f.id),
            f.slug,
            f.kind.value,
            f.injection_mode.value,
            "[green]yes[/green]" if f.active else "[dim]no[/dim]",
        )
    console.print(table)


@cli.command("import")
def import_file(
    path: Path,
    skip_validation: bool = typer.Option(False, help="Store code that fails syntax checks."),
    deactivate: bool = typer.Option(True, help="Import every snippet inactive."),
    skip_duplicates: bool = typer.Option(False, help="Skip snippets whose slug exists."),
) -> None:
    """Import snippets from an export file."""
    services = _services()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {path}: {e}[/red]")
        raise typer.Exit(code=1)

    report = services.editor.import_fragments(
        data,
        skip_validation=skip_validation,
        deactivate_on_import=deactivate,
        skip_duplicates=skip_duplicates,
    )
    for fragment in report.imported:
        console.print(f"[green]Imported #{fragment.id} {fragment.slug}[/green]")
    for message in report.skipped:
        console.print(f"[yellow]Skipped: {message}[/yellow]")
    for message in report.errors:
        console.print(f"[red]{message}[/red]")
    if report.errors:
        raise typer.Exit(code=1)


@cli.command("export")
def export_file(
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
    fragment_id: Optional[list[int]] = typer.Option(None, "--id"),
) -> None:
    """Export snippets as JSON."""
    services = _services()
    try:
        document = services.editor.export_fragments(fragment_id or None)
    except SnipgateError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    text = json.dumps(document, indent=2)
    if output is None:
        typer.echo(text)
    else:
        output.write_text(text, encoding="utf-8")
        console.print(f"[green]Exported {len(document['snippets'])} snippet(s) to {output}[/green]")


@cli.command("test-run")
def test_run(fragment_id: int) -> None:
    """Execute one snippet without touching its state."""
    services = _services()
    try:
        result = services.gateway.test_run(fragment_id)
    except SnipgateError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if result.success:
        console.print(f"[green]OK[/green] in {result.duration_ms:.1f}ms")
        if result.output:
            typer.echo(result.output)
    else:
        console.print(f"[red]{result.error_kind.value}: {result.error}[/red]")
        raise typer.Exit(code=1)


@cli.command("diagnostics")
def diagnostics() -> None:
    """Show and clear pending execution diagnostics."""
    services = _services()
    pending = services.gateway.consume_diagnostics()
    if not pending:
        console.print("[dim]No pending diagnostics.[/dim]")
        return
    for d in pending:
        console.print(
            f"[yellow]Snippet #{d.fragment_id} was deactivated:[/yellow] {d.error_message}"
        )
