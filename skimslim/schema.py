from __future__ import annotations

from pathlib import Path
from typing import Dict, Any, Optional, List

from skimslim.errors import SkimSlimError
from skimslim.models.sources import Source
from skimslim.models.sinks import Sink
from skimslim.util import _norm_path


def _source_to_ir(src: Source) -> Dict[str, Any]:
    d: Dict[str, Any] = {"uri": src.uri}
    if src.container is not None:
        d["container"] = src.container
    if src.type is not None:
        d["type"] = src.type
    if src.schema is not None:
        d["schema"] = src.schema
    if src.options:
        d["options"] = dict(src.options)
    return d


def _sink_to_ir(sink: Sink) -> Dict[str, Any]:
    d: Dict[str, Any] = {"uri": sink.uri}
    if sink.type is not None:
        d["type"] = sink.type
    if sink.replace:
        d["replace"] = True
    if sink.table is not None:
        d["table"] = sink.table
    if sink.options:
        d["options"] = dict(sink.options)
    return d


def _source_from_ir(d: Dict[str, Any]) -> Source:
    if not isinstance(d, dict):
        raise SkimSlimError(
            "E_IR_SOURCE",
            "IR input must be a mapping.",
            hint="Example: input: {uri: events.csv, container: events}",
        )
    uri = d.get("uri")
    if not isinstance(uri, str) or not uri:
        raise SkimSlimError(
            "E_IR_SOURCE",
            "IR input requires a non-empty 'uri' string.",
            hint="Example: input: {uri: events.csv}",
        )
    return Source(
        uri,
        container=d.get("container"),
        type=d.get("type"),
        schema=d.get("schema"),
        options=d.get("options") or {},
    )


def _sink_from_ir(d: Dict[str, Any]) -> Sink:
    if not isinstance(d, dict):
        raise SkimSlimError(
            "E_IR_SINK",
            "IR output must be a mapping.",
            hint="Example: output: {uri: out.csv}",
        )
    uri = d.get("uri")
    if not isinstance(uri, str) or not uri:
        raise SkimSlimError(
            "E_IR_SINK",
            "IR output requires a non-empty 'uri' string.",
            hint="Example: output: {uri: out.csv}",
        )
    return Sink(
        uri,
        type=d.get("type"),
        replace=bool(d.get("replace", False)),
        table=d.get("table"),
        options=d.get("options") or {},
    )


def _str_list(value: Any, *, code: str, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SkimSlimError(
            code,
            f"IR {what} must be a string or a list of strings.",
            hint=f"Got: {value!r}",
        )
    return list(value)


def _normalize_ir(ir: Any, *, base_dir: Optional[Path]) -> Dict[str, Any]:
    """Normalize IR structure and paths.

    Guarantees:
      - returns a dict with keys: skimslim, pipeline
      - pipeline.input.uri, pipeline.output.uri and every selection file are normalized
      - selection / selection_files / columns.enable / columns.disable are lists of strings
      - columns.disable_all is a bool
      - missing/None options become {}

    This does not change semantics; it makes the IR portable and deterministic.
    """
    if not isinstance(ir, dict):
        raise SkimSlimError(
            "E_IR_ROOT",
            "IR must be a mapping at the root.",
            hint="Expected keys: skimslim, pipeline.",
        )

    ir2: Dict[str, Any] = dict(ir)

    # Default version
    if ir2.get("skimslim") is None:
        ir2["skimslim"] = 0

    version = ir2.get("skimslim")
    if version != 0:
        raise SkimSlimError(
            "E_IR_VERSION",
            f"Unsupported IR version: {version!r}.",
            hint="Supported: skimslim: 0",
        )

    pipe = ir2.get("pipeline")
    if not isinstance(pipe, dict):
        raise SkimSlimError(
            "E_IR_PIPELINE",
            "IR requires a 'pipeline' mapping.",
            hint="Example: {skimslim: 0, pipeline: {input: {...}, selection: [...], output: {...}}}",
        )

    pipe2: Dict[str, Any] = dict(pipe)

    # Normalize input
    start = pipe2.get("input")
    if not isinstance(start, dict):
        raise SkimSlimError(
            "E_IR_SOURCE",
            "IR pipeline.input must be a mapping.",
            hint="Example: input: {uri: events.csv, container: events}",
        )
    start2: Dict[str, Any] = dict(start)
    u = start2.get("uri")
    if isinstance(u, str):
        start2["uri"] = _norm_path(u, base_dir=base_dir)
    if "options" in start2 and start2["options"] is None:
        start2["options"] = {}
    pipe2["input"] = start2

    # Selections
    pipe2["selection"] = _str_list(pipe2.get("selection"), code="E_IR_SELECTION", what="pipeline.selection")
    files = _str_list(pipe2.get("selection_files"), code="E_IR_SELECTION", what="pipeline.selection_files")
    pipe2["selection_files"] = [_norm_path(f, base_dir=base_dir) for f in files]

    # Columns
    cols = pipe2.get("columns")
    if cols is None:
        cols = {}
    if not isinstance(cols, dict):
        raise SkimSlimError(
            "E_IR_COLUMNS",
            "IR pipeline.columns must be a mapping.",
            hint="Example: columns: {disable_all: true, enable: [pt, eta]}",
        )
    disable_all = cols.get("disable_all", False)
    if not isinstance(disable_all, bool):
        raise SkimSlimError(
            "E_IR_COLUMNS",
            "IR columns.disable_all must be a boolean.",
            hint="Example: columns: {disable_all: true}",
        )
    pipe2["columns"] = {
        "disable_all": disable_all,
        "disable": _str_list(cols.get("disable"), code="E_IR_COLUMNS", what="columns.disable"),
        "enable": _str_list(cols.get("enable"), code="E_IR_COLUMNS", what="columns.enable"),
    }

    # Normalize output
    out = pipe2.get("output")
    if out is not None:
        if not isinstance(out, dict):
            raise SkimSlimError(
                "E_IR_SINK",
                "IR output must be a mapping.",
                hint="Example: output: {uri: out.csv, replace: true}",
            )
        out2: Dict[str, Any] = dict(out)
        su = out2.get("uri")
        if isinstance(su, str):
            out2["uri"] = _norm_path(su, base_dir=base_dir)
        if "options" in out2 and out2["options"] is None:
            out2["options"] = {}
        pipe2["output"] = out2

    return {"skimslim": 0, "pipeline": pipe2}
