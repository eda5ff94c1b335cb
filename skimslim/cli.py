from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from skimslim.errors import SkimSlimError
from skimslim.models.pipeline import Pipeline
from skimslim.models.sinks import Sink
from skimslim.models.sources import Source

app = typer.Typer(help="Skim (keep selected entries) and slim (keep selected columns) a tabular dataset.",
                  add_completion=False, context_settings={"help_option_names": ["-h", "--help"]})

DEFAULT_OUTPUT = "output.csv"


def _setup_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger("skimslim").setLevel(level)


def _build(
        config: Optional[Path],
        input: Optional[str],
        container: Optional[str],
        selection: List[str],
        selection_file: List[str],
        enable: List[str],
        disable: List[str],
        disable_all: bool,
        output: Optional[str],
        replace: bool,
) -> Pipeline:
    """Merge a YAML run description with command line values.

    Lists extend the config, flags are OR-ed, scalars override.
    """
    base = Pipeline.load_yaml(config) if config is not None else None

    uri = input or (base.start.uri if base is not None else None)
    if not uri:
        raise SkimSlimError("E_CLI_INPUT", "Missing option '--input' / '-i'.",
                            hint="Pass the input file, directory or glob.")
    cont = container or (base.start.container if base is not None else None)
    if not cont:
        raise SkimSlimError("E_CLI_CONTAINER", "Missing option '--container' / '-c'.",
                            hint="Pass the name of the table to read (it also names the output table).")
    if base is not None:
        start = Source(uri, container=cont, type=base.start.type if uri == base.start.uri else None,
                       schema=base.start.schema, options=base.start.options)
    else:
        start = Source(uri, container=cont)

    old_sink = base.sink if base is not None else None
    if output is None and old_sink is not None:
        sink = Sink(old_sink.uri, type=old_sink.type, replace=old_sink.replace or replace,
                    table=old_sink.table, options=old_sink.options)
    else:
        sink = Sink(output or DEFAULT_OUTPUT, replace=replace or bool(old_sink and old_sink.replace))

    pipe = Pipeline(
        start,
        selections=(base.selections if base else []) + selection,
        selection_files=(base.selection_files if base else []) + selection_file,
        enable=(base.enable if base else []) + enable,
        disable=(base.disable if base else []) + disable,
        disable_all=disable_all or bool(base and base.disable_all),
    )
    return pipe.then(sink)


@app.command()
def main(
        input: Optional[str] = typer.Option(None, "--input", "-i",
                                            help="The input data: a file, a directory of shards, or a glob."),
        container: Optional[str] = typer.Option(None, "--container", "-c",
                                                help="The table inside each input shard (names the output table)."),
        selection: Optional[List[str]] = typer.Option(None, "--selection", "-s",
                                                      help="A selection expression; repeat to AND several."),
        selection_file: Optional[List[str]] = typer.Option(
            None, "--selection-file", "-S",
            help="A file with one selection expression per line. Lines beginning with # are comments."),
        enable: Optional[List[str]] = typer.Option(None, "--enable", "-e",
                                                   help="Enable a column (overrides disabling). Wildcards allowed."),
        disable: Optional[List[str]] = typer.Option(None, "--disable", "-d",
                                                    help="Disable a column. Wildcards allowed."),
        disable_all: bool = typer.Option(False, "--disable-all", "-D", help="Disable all columns."),
        output: Optional[str] = typer.Option(None, "--output", "-o",
                                             help=f"The output file (default: {DEFAULT_OUTPUT})."),
        replace: bool = typer.Option(False, "--replace", "-r", help="Replace the output file if it already exists."),
        config: Optional[Path] = typer.Option(None, "--config", help="A YAML run description to start from."),
        explain: bool = typer.Option(False, "--explain",
                                     help="Print the compiled selection and output columns, then exit."),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Print more detailed output."),
):
    """Copy the entries passing every selection, keeping only the enabled columns."""
    _setup_logging(verbose)
    log = logging.getLogger("skimslim.cli")
    try:
        pipe = _build(config, input, container, selection or [], selection_file or [], enable or [],
                      disable or [], disable_all, output, replace)
        log.info("Skim/slim: %s", pipe.start)
        if explain:
            typer.echo(json.dumps(pipe.explain(), indent=2))
            return
        pipe.run()
    except SkimSlimError as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
