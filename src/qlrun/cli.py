from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import tempfile
from typing import List, Optional

import typer

from qlrun.config import EngineConfig, TomlTable, resolve_engine_config
from qlrun.engine_tools import (
    bqrs_info,
    resolve_library_path,
    resolve_metadata,
    resolve_ram,
)
from qlrun.exceptions import ConfigError, EngineToolError, QueryServerError
from qlrun.pipeline import LoadRequest, PipelineOutcome, QueryInvocation, QuickEvalRegion
from qlrun.registration import Database
from qlrun.reporting import EchoReporter, Reporter
from qlrun.schema import string_template_values
from qlrun.session import Session

app = typer.Typer(add_completion=False)
logger = logging.getLogger(__name__)

_QLO_NAME = "query.qlo"
_RESULTS_NAME = "results.bqrs"


@dataclass(frozen=True)
class CliState:
    config_path: Path | None
    verbose: bool


class ArtifactSummaryLoader:
    """Summarizes a results artifact; turning it into rows is someone else's job."""

    def __init__(self, config: EngineConfig, reporter: Reporter) -> None:
        self.config = config
        self.reporter = reporter
        self.loaded: list[LoadRequest] = []

    def __call__(self, request: LoadRequest) -> None:
        self.loaded.append(request)
        self.reporter.info(f"Results: {request.artifact_path}")
        try:
            info = bqrs_info(self.config, request.artifact_path)
        except EngineToolError as exc:
            self.reporter.error(f"ERROR: Could not get BQRS info: {exc.message}")
            return
        result_sets = info.get("resultSets")
        if not isinstance(result_sets, list):
            return
        for result_set in result_sets:
            if isinstance(result_set, dict):
                self.reporter.info(f"  {result_set.get('name')}: {result_set.get('rows')} rows")


def _state(ctx: typer.Context) -> CliState:
    state = ctx.obj
    if isinstance(state, CliState):
        return state
    return CliState(config_path=None, verbose=False)


def _load_config(ctx: typer.Context, overrides: TomlTable | None = None) -> EngineConfig:
    state = _state(ctx)
    try:
        return resolve_engine_config(config_path=state.config_path, overrides=overrides)
    except ConfigError as exc:
        typer.echo(exc.message, err=True)
        raise typer.Exit(code=2) from exc


def _parse_templates(values: List[str] | None) -> dict[str, str]:
    bindings: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--template")
        bindings[name.strip()] = value
    return bindings


def _library_inputs(
    config: EngineConfig,
    query: Path,
    library_path: List[str] | None,
    dbscheme: Optional[str],
    reporter: Reporter,
) -> tuple[tuple[str, ...], str]:
    if library_path and dbscheme:
        return tuple(library_path), dbscheme
    try:
        resolved = resolve_library_path(config, str(query))
    except EngineToolError as exc:
        reporter.error(f"ERROR: Could not resolve library path: {exc.message}")
        raise typer.Exit(code=1) from exc
    raw_paths = resolved.get("libraryPath")
    paths = tuple(str(item) for item in raw_paths) if isinstance(raw_paths, list) else ()
    return tuple(library_path or paths), dbscheme or str(resolved.get("dbscheme") or "")


def _metadata(config: EngineConfig, query: Path) -> dict[str, str]:
    try:
        return resolve_metadata(config, str(query))
    except EngineToolError as exc:
        logger.debug("No metadata for %s: %s", query, exc)
        return {}


def build_invocation(
    config: EngineConfig,
    query: Path,
    *,
    work_dir: Path,
    library_path: List[str] | None,
    dbscheme: Optional[str],
    templates: List[str] | None,
    region: QuickEvalRegion | None,
    reporter: Reporter,
) -> QueryInvocation:
    libraries, dbscheme_path = _library_inputs(config, query, library_path, dbscheme, reporter)
    return QueryInvocation(
        query_path=str(query.resolve()),
        dbscheme_path=dbscheme_path,
        qlo_path=str(work_dir / _QLO_NAME),
        results_path=str(work_dir / _RESULTS_NAME),
        library_path=libraries,
        quick_eval=region,
        metadata=_metadata(config, query),
        template_values=string_template_values(_parse_templates(templates)),
    )


async def _run_session(
    session: Session, database: Database, invocation: QueryInvocation
) -> PipelineOutcome | None:
    try:
        try:
            await session.register_database(database)
        except QueryServerError:
            return None
        outcome = await session.execute(invocation)
        if not session.supervisor.running:
            return outcome
        try:
            await session.deregister_database()
        except QueryServerError as exc:
            logger.debug("Deregistration after run failed: %s", exc)
        return outcome
    finally:
        session.stop()


def _execute(
    ctx: typer.Context,
    query: Path,
    *,
    db: Path,
    dataset: Optional[Path],
    library_path: List[str] | None,
    dbscheme: Optional[str],
    templates: List[str] | None,
    region: QuickEvalRegion | None,
) -> None:
    config = _load_config(ctx)
    reporter = EchoReporter()
    work_dir = Path(tempfile.mkdtemp(prefix="qlrun-"))
    invocation = build_invocation(
        config,
        query,
        work_dir=work_dir,
        library_path=library_path,
        dbscheme=dbscheme,
        templates=templates,
        region=region,
        reporter=reporter,
    )
    database = Database(
        path=str(db.resolve()),
        dataset_folder=str(dataset.resolve()) if dataset is not None else None,
        working_set=config.working_set,
    )
    session = Session(
        config,
        reporter=reporter,
        loader=ArtifactSummaryLoader(config, reporter),
    )
    try:
        outcome = asyncio.run(_run_session(session, database, invocation))
    except QueryServerError as exc:
        logger.debug("Session aborted: %s", exc)
        raise typer.Exit(code=1) from exc
    if outcome is None or not outcome.succeeded:
        raise typer.Exit(code=1)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to qlrun.toml."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic and engine stderr."),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    ctx.obj = CliState(config_path=config, verbose=verbose)


@app.command("run")
def run(
    ctx: typer.Context,
    query: Path = typer.Argument(..., exists=True, dir_okay=False),
    db: Path = typer.Option(..., "--db", help="Database directory."),
    dataset: Optional[Path] = typer.Option(
        None, "--dataset", help="Dataset folder inside the database (defaults to --db)."
    ),
    library_path: Optional[List[str]] = typer.Option(None, "--library-path"),
    dbscheme: Optional[str] = typer.Option(None, "--dbscheme"),
    template: Optional[List[str]] = typer.Option(
        None, "--template", help="Template binding NAME=VALUE; repeatable."
    ),
) -> None:
    """Compile QUERY and evaluate it against a database."""
    _execute(
        ctx,
        query,
        db=db,
        dataset=dataset,
        library_path=library_path,
        dbscheme=dbscheme,
        templates=template,
        region=None,
    )


@app.command("quick-eval")
def quick_eval(
    ctx: typer.Context,
    query: Path = typer.Argument(..., exists=True, dir_okay=False),
    db: Path = typer.Option(..., "--db", help="Database directory."),
    start_line: int = typer.Option(..., "--start-line", min=1),
    start_column: int = typer.Option(..., "--start-column", min=1),
    end_line: int = typer.Option(..., "--end-line", min=1),
    end_column: int = typer.Option(..., "--end-column", min=1),
    dataset: Optional[Path] = typer.Option(None, "--dataset"),
    library_path: Optional[List[str]] = typer.Option(None, "--library-path"),
    dbscheme: Optional[str] = typer.Option(None, "--dbscheme"),
    template: Optional[List[str]] = typer.Option(None, "--template"),
) -> None:
    """Evaluate only the selected region of QUERY."""
    _execute(
        ctx,
        query,
        db=db,
        dataset=dataset,
        library_path=library_path,
        dbscheme=dbscheme,
        templates=template,
        region=QuickEvalRegion(
            start_line=start_line,
            start_column=start_column,
            end_line=end_line,
            end_column=end_column,
        ),
    )


@app.command("resolve-ram")
def resolve_ram_command(
    ctx: typer.Context,
    jvm_only: bool = typer.Option(False, "--jvm-only", help="Keep only -J options."),
) -> None:
    """Print the resource options the query server would be started with."""
    config = _load_config(ctx)
    try:
        options = resolve_ram(config, jvm_only=jvm_only)
    except EngineToolError as exc:
        typer.echo(f"ERROR: Could not resolve RAM options: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(options))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
