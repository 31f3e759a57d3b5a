"""CLI entrypoint for ecm-harvest."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from ecm_harvest import __version__
from ecm_harvest.controllers import (
    BatchCheckCommand,
    BatchDailyCommand,
    BatchRunCommand,
    ConfigsListCommand,
    DataDeleteCommand,
    HarvestCliController,
    ImportRunCommand,
    LogsCommand,
)
from ecm_harvest.errors import HarvestError
from ecm_harvest.importer.state import FoundFolder

click.rich_click.USE_MARKDOWN = True
CONTROLLER = HarvestCliController()

_T = TypeVar("_T")


@click.group()
@click.version_option(version=__version__, prog_name="ecm-harvest")
def ecm_harvest() -> None:
    """ECM record harvesting CLI.

    Runs extraction agents one document at a time and imports folder
    configurations from the document store.
    """

    level = getattr(logging, os.getenv("ECM_HARVEST_LOG_LEVEL", "WARNING").strip().upper(), None)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ecm_harvest.group()
def batch() -> None:
    """Batch extraction commands."""


@batch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--items-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON list of work items (`target`, `label`, `task_type`, `year`, `month`).",
)
def batch_run(db_path: Path | None, items_file: Path) -> None:
    """Run work items in order, one execution context at a time."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_batch(
                BatchRunCommand(db_path=db_path, items_file=items_file),
                progress=click.echo,
            ),
        ),
    )


@batch.command("daily")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--year", type=click.IntRange(min=2000, max=2100), default=None, help="Run year.")
@click.option("--month", type=click.IntRange(min=1, max=12), default=None, help="Run month.")
def batch_daily(db_path: Path | None, year: int | None, month: int | None) -> None:
    """Fetch every stored folder configuration of the current (or given) month."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_daily(
                BatchDailyCommand(db_path=db_path, year=year, month=month),
                progress=click.echo,
            ),
        ),
    )


@batch.command("check")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def batch_check(db_path: Path | None) -> None:
    """Report whether the daily fetch has run today and log a missed run."""

    _emit_lines(_run(lambda: CONTROLLER.check_daily(BatchCheckCommand(db_path=db_path))))


@ecm_harvest.group("import")
def import_group() -> None:
    """Folder import commands."""


@import_group.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--select-all",
    is_flag=True,
    default=False,
    help="Expand every discovered folder type without prompting.",
)
def import_run(db_path: Path | None, select_all: bool) -> None:
    """Discover folder types, choose some, and store monthly folder configurations."""

    selector = _select_all if select_all else _prompt_selection
    _emit_lines(
        _run(lambda: CONTROLLER.run_import(ImportRunCommand(db_path=db_path), selector)),
    )


@ecm_harvest.group()
def configs() -> None:
    """Folder configuration commands."""


@configs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--year", type=click.IntRange(min=2000, max=2100), default=None, help="Filter.")
@click.option("--month", type=click.IntRange(min=1, max=12), default=None, help="Filter.")
def configs_list(db_path: Path | None, year: int | None, month: int | None) -> None:
    """List stored folder configurations."""

    _emit_lines(
        CONTROLLER.list_configs(ConfigsListCommand(db_path=db_path, year=year, month=month)),
    )


@ecm_harvest.group()
def logs() -> None:
    """Execution and error log commands."""


@logs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max rows, newest first.",
)
def logs_show(db_path: Path | None, limit: int) -> None:
    """Show the execution log."""

    _emit_lines(CONTROLLER.show_logs(LogsCommand(db_path=db_path, limit=limit)))


@logs.command("errors")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max rows, newest first.",
)
@click.option(
    "--severity",
    type=click.Choice(["info", "warning", "error", "critical"]),
    default=None,
    help="Only show one severity.",
)
def logs_errors(db_path: Path | None, limit: int, severity: str | None) -> None:
    """Show recorded errors."""

    _emit_lines(
        CONTROLLER.show_errors(LogsCommand(db_path=db_path, limit=limit, severity=severity)),
    )


@ecm_harvest.group()
def data() -> None:
    """Stored record commands."""


@data.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--year", type=click.IntRange(min=2000, max=2100), required=True)
@click.option("--month", type=click.IntRange(min=1, max=12), required=True)
@click.option("--person", "persons", multiple=True, help="Person to delete. Can be repeated.")
@click.option("--folder", "folders", multiple=True, help="Folder to delete. Can be repeated.")
def data_delete(
    db_path: Path | None,
    year: int,
    month: int,
    persons: tuple[str, ...],
    folders: tuple[str, ...],
) -> None:
    """Delete stored record counts of one month (all people and folders by default)."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.delete_data(
                DataDeleteCommand(
                    db_path=db_path,
                    year=year,
                    month=month,
                    persons=persons,
                    folders=folders,
                ),
            ),
        ),
    )


def _select_all(found: list[FoundFolder], errors: list[str]) -> list[FoundFolder]:
    for error in errors:
        click.echo(f"Scan error: {error}")
    return found


def _prompt_selection(found: list[FoundFolder], errors: list[str]) -> list[FoundFolder]:
    for error in errors:
        click.echo(f"Scan error: {error}")
    if not found:
        click.echo("No folder types found.")
        return []
    for number, folder in enumerate(found, start=1):
        click.echo(f"{number:>3}. {folder.name}  {folder.url}")
    while True:
        answer = click.prompt(
            "Folders to import (comma-separated numbers, 'all' or 'none')",
            default="all",
        )
        try:
            return _parse_selection(answer, found)
        except ValueError as error:
            click.echo(str(error))


def _parse_selection(answer: str, found: list[FoundFolder]) -> list[FoundFolder]:
    normalized = answer.strip().lower()
    if normalized == "all":
        return list(found)
    if normalized in {"", "none"}:
        return []
    chosen: list[FoundFolder] = []
    for part in normalized.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or not 1 <= int(part) <= len(found):
            raise ValueError(f"Invalid choice {part!r}; use numbers 1-{len(found)}.")
        folder = found[int(part) - 1]
        if folder not in chosen:
            chosen.append(folder)
    return chosen


def _run(action: Callable[[], _T]) -> _T:
    try:
        return action()
    except (HarvestError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ecm_harvest()
