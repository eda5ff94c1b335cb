from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Union, Optional, Dict, Any, Tuple

import yaml

from skimslim.errors import SkimSlimError
from skimslim.models.columns import Column, Schema, apply_projection
from skimslim.models.selection import CompiledPredicate, CompositeSelection, compile_selection, load_selection
from skimslim.models.sinks import Sink, SinkWriter
from skimslim.models.sources import Dataset, Source
from skimslim.schema import _source_to_ir, _sink_to_ir, _source_from_ir, _sink_from_ir, _normalize_ir
from skimslim.util import FrictionlessSchema

_log = logging.getLogger("skimslim.pipeline")


class RunState(enum.Enum):
    IDLE = "idle"
    OPENED = "opened"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class PipelineContext:
    state: RunState = RunState.IDLE
    schema: Optional[FrictionlessSchema] = None
    selection: List[str] = field(default_factory=list)
    entries: int = 0
    accepted: int = 0
    checkpoints: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    error: Optional[SkimSlimError] = None


@dataclass
class Pipeline:
    """
    Source -> selection + column projection -> Sink.
    """
    start: Source
    selections: List[str] = field(default_factory=list)
    selection_files: List[str] = field(default_factory=list)
    enable: List[str] = field(default_factory=list)
    disable: List[str] = field(default_factory=list)
    disable_all: bool = False
    sink: Optional[Sink] = None

    # ---------- building ----------
    def where(self, *exprs: str) -> "Pipeline":
        return replace(self, selections=self.selections + list(exprs))

    def where_file(self, *paths: Union[str, Path]) -> "Pipeline":
        return replace(self, selection_files=self.selection_files + [str(p) for p in paths])

    def keep(self, *columns: str) -> "Pipeline":
        return replace(self, enable=self.enable + list(columns))

    def drop(self, *columns: str) -> "Pipeline":
        return replace(self, disable=self.disable + list(columns))

    def drop_all(self) -> "Pipeline":
        return replace(self, disable_all=True)

    def then(self, step: Sink) -> "Pipeline":
        if not isinstance(step, Sink):
            raise SkimSlimError(
                "E_PIPELINE_STEP",
                "Pipeline.then expects a Sink.",
                hint="Example: pipe.then(Sink('out.csv')). Use where()/drop()/keep() for selections and columns.",
            )
        if self.sink is not None:
            raise SkimSlimError(
                "E_PIPELINE_ORDER",
                "This pipeline already writes to a Sink.",
                hint="A run writes exactly one output; build a second Pipeline for another output.",
            )
        return replace(self, sink=step)

    def __str__(self) -> str:
        parts = [f"Pipeline(start={self.start.uri})"]
        for s in self.selections:
            parts.append(f"  where {s}")
        for f in self.selection_files:
            parts.append(f"  where-file {f}")
        if self.disable_all:
            parts.append("  drop *")
        if self.disable:
            parts.append("  drop " + ", ".join(self.disable))
        if self.enable:
            parts.append("  keep " + ", ".join(self.enable))
        if self.sink is not None:
            parts.append(f"  -> {self.sink}")
        return "\n".join(parts)

    def selection(self) -> CompositeSelection:
        return load_selection(self.selections, self.selection_files)

    def project(self, schema: Schema) -> Schema:
        return apply_projection(schema, self.disable_all, self.disable, self.enable)

    def preflight(self) -> None:
        """
        Validate the run description before opening anything.
        """
        if self.sink is None:
            raise SkimSlimError(
                "E_PIPELINE_SINK",
                "Pipeline has no output.",
                hint="Add one with pipe.then(Sink('out.csv')).",
            )
        if not isinstance(self.start, Source):
            raise SkimSlimError(
                "E_PIPELINE_SOURCE",
                "Pipeline.start must be a Source.",
                hint="Example: Pipeline(Source('events.csv')).",
            )

    def explain(self) -> Dict[str, Any]:
        """Compile the selection and projection against the input without copying anything."""
        with self.start.open() as dataset:
            schema = self.project(dataset.schema())
            predicate = compile_selection(self.selection(), schema)
        return {
            "selection": predicate.text,
            "clauses": [f"{c.origin}: {c.text}" for c in predicate.selection],
            "reads": list(predicate.columns),
            "columns": [c.name for c in schema.enabled_columns()],
            "schema": schema.to_descriptor(enabled_only=True),
        }

    # ---------- running ----------
    def run(self, context: Optional[PipelineContext] = None) -> PipelineContext:
        """Skim and slim the input into the sink.

        Errors propagate; pass `context` to inspect the FAILED state afterwards.
        """
        ctx = context if context is not None else PipelineContext()
        ctx.state = RunState.IDLE
        dataset: Optional[Dataset] = None
        writer: Optional[SinkWriter] = None
        try:
            self.preflight()

            dataset = self.start.open()
            writer = self.sink.open(table=self.start.container)
            ctx.state = RunState.OPENED
            ctx.checkpoints.append(("open", {"input": self.start.uri, "shards": len(dataset.shards),
                                             "output": self.sink.uri}))

            schema = self.project(dataset.schema())
            predicate = compile_selection(self.selection(), schema)
            out_columns = schema.enabled_columns()
            writer.begin(out_columns)
            ctx.schema = schema.to_descriptor(enabled_only=True)
            ctx.selection = [c.text for c in predicate.selection]
            ctx.checkpoints.append(("compile", {"selection": predicate.text, "reads": list(predicate.columns),
                                                "columns": [c.name for c in out_columns]}))

            ctx.state = RunState.RUNNING
            self._copy(dataset, predicate, out_columns, writer, ctx)

            ctx.state = RunState.FINALIZING
            writer.commit()
            ctx.state = RunState.COMMITTED
            ctx.checkpoints.append(("commit", {"output": self.sink.uri, "entries": ctx.entries,
                                               "accepted": ctx.accepted}))
            _log.info("Kept %d of %d entries", ctx.accepted, ctx.entries)
            return ctx
        except SkimSlimError as e:
            ctx.state = RunState.FAILED
            ctx.error = e
            raise
        except Exception:
            ctx.state = RunState.FAILED
            raise
        finally:
            if writer is not None and ctx.state is not RunState.COMMITTED:
                writer.discard()
            if dataset is not None:
                dataset.close()

    @staticmethod
    def _copy(
            dataset: Dataset,
            predicate: CompiledPredicate,
            out_columns: List[Column],
            writer: SinkWriter,
            ctx: PipelineContext,
    ) -> None:
        n = dataset.length()
        _log.info("There are %d entries.", n)

        shard = -1
        keep: List[int] = []
        for i in range(n):
            k = dataset.shard_at(i)
            if k != shard:
                shard = k
                predicate, keep = _rebind(dataset, k, predicate, out_columns)
                ctx.checkpoints.append(("shard", {"index": k, "path": dataset.shards[k], "first_entry": i}))

            if predicate.evaluate(dataset.read_columns(i, predicate.columns)):
                row = dataset.read(i)
                writer.append(tuple(row[j] for j in keep))
                ctx.accepted += 1
            ctx.entries += 1

    # ---------- IR / YAML ----------
    def to_ir(self) -> Dict[str, Any]:
        """Serialize this pipeline to a YAML-friendly IR (dict)."""
        pipe: Dict[str, Any] = {
            "input": _source_to_ir(self.start),
            "selection": list(self.selections),
            "selection_files": list(self.selection_files),
            "columns": {
                "disable_all": self.disable_all,
                "disable": list(self.disable),
                "enable": list(self.enable),
            },
        }
        if self.sink is not None:
            pipe["output"] = _sink_to_ir(self.sink)
        return {"skimslim": 0, "pipeline": pipe}

    @classmethod
    def from_ir(cls, ir: Dict[str, Any], *, base_dir: Optional[Path] = None) -> "Pipeline":
        """Deserialize a pipeline from IR (dict)."""
        ir = _normalize_ir(ir, base_dir=base_dir)
        pipe = ir["pipeline"]
        cols = pipe["columns"]

        out = cls(
            _source_from_ir(pipe["input"]),
            selections=pipe["selection"],
            selection_files=pipe["selection_files"],
            enable=cols["enable"],
            disable=cols["disable"],
            disable_all=cols["disable_all"],
        )
        if pipe.get("output") is not None:
            out = out.then(_sink_from_ir(pipe["output"]))
        return out

    def to_yaml(self, path: Optional[Union[str, Path]] = None) -> str:
        """Dump IR to YAML string. If `path` is provided, also write the file."""
        text = yaml.safe_dump(self.to_ir(), sort_keys=False)
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text

    @classmethod
    def from_yaml(cls, text_or_path: Union[str, Path], *, base_dir: Optional[Path] = None) -> "Pipeline":
        """Load pipeline from YAML string or file path."""
        # Accept path-like input for convenience
        text = str(text_or_path)
        if isinstance(text_or_path, Path) or "\n" not in text:
            p = Path(text_or_path)
            if p.is_file():
                base_dir = base_dir or p.parent
                text = p.read_text(encoding="utf-8")
        try:
            ir = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise SkimSlimError(
                "E_YAML_PARSE",
                f"Failed to parse YAML: {e}",
                hint="Check indentation and quoting.",
            ) from e
        return cls.from_ir(ir, base_dir=base_dir)

    def save_yaml(self, path: Union[str, Path]) -> None:
        """Write YAML IR to a file."""
        self.to_yaml(path)

    @classmethod
    def load_yaml(cls, path: Union[str, Path]) -> "Pipeline":
        """Load YAML IR from a file."""
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise SkimSlimError(
                "E_YAML_READ",
                f"Could not read run description '{p}': {e}",
                hint="Check the --config path.",
            ) from e
        return cls.from_yaml(text, base_dir=p.parent)


def _rebind(
        dataset: Dataset,
        k: int,
        predicate: CompiledPredicate,
        out_columns: List[Column],
) -> Tuple[CompiledPredicate, List[int]]:
    """Make the predicate and the projection valid for shard k."""
    shard_schema = dataset.refresh(k)
    if shard_schema.fingerprint != predicate.schema.fingerprint:
        _log.info("Shard %s has a different schema; rebinding selection", dataset.shards[k])
        predicate = predicate.rebind(shard_schema)

    missing = [c.name for c in out_columns if c.name not in shard_schema]
    if missing:
        raise SkimSlimError(
            "E_SHARD_SCHEMA",
            f"Shard '{dataset.shards[k]}' lacks output column(s): {missing}.",
            hint="All shards must provide every enabled column; disable the missing ones or fix the input.",
        )
    return predicate, [shard_schema.index(c.name) for c in out_columns]
