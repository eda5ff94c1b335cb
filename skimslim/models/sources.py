from __future__ import annotations

import bisect
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, Tuple

import petl as etl
from frictionless import Detector

from skimslim.errors import SkimSlimError
from skimslim.models.columns import Column, Schema
from skimslim.util import FrictionlessSchema, _expand_shards, _infer_type_from_uri, _normalize_inline_schema, \
    _quote_ident, _is_glob

_log = logging.getLogger("skimslim.sources")

SUPPORTED_TYPES = ("csv", "sqlite")


def _sqlite_type(decl: str) -> str:
    """Map a declared SQLite column type to a frictionless type (affinity rules)."""
    d = (decl or "").upper()
    if "BOOL" in d:
        return "boolean"
    if "INT" in d:
        return "integer"
    if "CHAR" in d or "CLOB" in d or "TEXT" in d:
        return "string"
    if "REAL" in d or "FLOA" in d or "DOUB" in d or "NUM" in d or "DEC" in d:
        return "number"
    return "any"


@dataclass(frozen=True)
class Source:
    """An input dataset: one shard file, a directory of shards, or a glob.

    `container` names the table inside each sqlite shard.
    """
    uri: str
    container: Optional[str] = None
    type: Optional[str] = None
    schema: Optional[FrictionlessSchema] = None
    options: Dict[str, Any] = field(default_factory=dict)

    # bounded sample used for csv type inference
    sample_rows: int = 200

    def __post_init__(self) -> None:
        object.__setattr__(self, "uri", str(self.uri))

        shards = _expand_shards(self.uri, type=self.type)
        if not shards:
            raise SkimSlimError(
                "E_SOURCE_NOT_FOUND",
                f"Input not found: no readable shard matches '{self.uri}'.",
                hint="Pass an existing file, a directory of shards, or a glob such as 'data/*.csv'.",
            )

        inferred = self.type or _infer_type_from_uri(shards[0])
        object.__setattr__(self, "type", inferred)
        if self.type is None:
            raise SkimSlimError(
                "E_SOURCE_TYPE_INFER",
                f"Could not infer Source type from uri='{self.uri}'.",
                hint="Provide type explicitly, e.g. Source('events.txt', type='csv').",
            )
        if self.type not in SUPPORTED_TYPES:
            raise SkimSlimError(
                "E_SOURCE_TYPE_UNSUPPORTED",
                f"Source type '{self.type}' is not supported.",
                hint="Currently supported source types: " + ", ".join(SUPPORTED_TYPES) + ".",
            )

        if self.type == "sqlite" and not self.container:
            raise SkimSlimError(
                "E_SOURCE_CONTAINER",
                "A sqlite source needs a container (the table to read).",
                hint="Example: Source('events.db', container='events').",
            )

        if self.schema is not None:
            _normalize_inline_schema(self.schema)

    # ---------- shards ----------
    def shards(self) -> List[str]:
        shards = _expand_shards(self.uri, type=self.type)
        if not shards:
            raise SkimSlimError(
                "E_SOURCE_NOT_FOUND",
                f"Input not found: no readable shard matches '{self.uri}'.",
                hint="The input may have been moved or deleted after the run was configured.",
            )
        return shards

    def table(self, shard: str, connection: Optional[sqlite3.Connection] = None):
        """
        Return a PETL table over one shard. Reading occurs on iteration.
        """
        if self.type == "csv":
            return etl.fromcsv(shard, **self.options)
        if connection is None:
            raise SkimSlimError(
                "E_SOURCE_CONNECTION",
                f"Shard '{shard}' needs an open connection.",
                hint="Use Source.open() to read sqlite shards.",
            )
        return etl.fromdb(connection, f"SELECT * FROM {_quote_ident(self.container)}")

    def connect(self, shard: str) -> sqlite3.Connection:
        try:
            return sqlite3.connect(Path(shard).resolve().as_uri() + "?mode=ro", uri=True)
        except sqlite3.Error as e:
            raise SkimSlimError(
                "E_SOURCE_READ",
                f"Could not open shard '{shard}': {e}",
                hint="Check that the file is a sqlite database and is readable.",
            ) from e

    # ---------- schema ----------
    def shard_schema(self, shard: str, table, connection: Optional[sqlite3.Connection] = None) -> Schema:
        """Schema of one shard, in the shard's column order.

        An inline schema is authoritative for the columns it names; other
        columns are typed from the sqlite declaration or from a bounded
        frictionless sample (csv).
        """
        if self.type == "sqlite":
            rows = connection.execute(f"PRAGMA table_info({_quote_ident(self.container)})").fetchall()
            if not rows:
                raise SkimSlimError(
                    "E_SOURCE_CONTAINER",
                    f"Container '{self.container}' not found in shard '{shard}'.",
                    hint="Check the table name passed as container.",
                )
            detected = {r[1]: Column(r[1], _sqlite_type(r[2]), inferred=True) for r in rows}
            header = [r[1] for r in rows]
        else:
            header = list(_header(table, shard))
            detected = self._detect(table, header)

        declared = {}
        if isinstance(self.schema, dict):
            declared = {c.name: c for c in Schema.from_descriptor(self.schema)}
            unknown = [n for n in declared if n not in header]
            if unknown:
                _log.warning("Inline schema names column(s) missing from shard %s: %s", shard, unknown)

        return Schema(tuple(declared.get(n) or detected.get(n) or Column(n) for n in header))

    def _detect(self, table, header: List[str]) -> Dict[str, Column]:
        if not header:
            return {}
        if isinstance(self.schema, dict):
            named = {f["name"] for f in self.schema.get("fields", [])}
            if all(h in named for h in header):
                return {}
        fragment = [list(r) for r in etl.data(etl.head(table, self.sample_rows))]
        try:
            detector = Detector(sample_size=self.sample_rows)
            inferred = detector.detect_schema(fragment, labels=header)
            desc = inferred.to_descriptor()
        except Exception as e:
            raise SkimSlimError(
                "E_SOURCE_SCHEMA_INFER",
                f"Schema inference failed: {e}",
                hint="Provide an inline schema, e.g. Source(..., schema={'fields': [{'name': 'pt', 'type': 'number'}]}).",
            ) from e
        return {c.name: replace(c, inferred=True) for c in Schema.from_descriptor(desc)}

    def peek_schema(self) -> Schema:
        """Schema of the first shard with a header. Does NOT read past the type-inference sample."""
        with self.open() as ds:
            return ds.schema()

    def open(self) -> "Dataset":
        shards = self.shards()
        _log.info("Input: %s (%d shard(s), container=%s)", self.uri, len(shards), self.container)
        return Dataset(self, shards)

    def __str__(self) -> str:
        kind = self.type or "unknown"
        hdr = f'Source("{self.uri}")  kind={kind}'
        if self.container:
            hdr += f"  container={self.container}"
        if _is_glob(self.uri) or Path(self.uri).is_dir():
            hdr += f"  shards={len(self.shards())}"
        if self.schema is not None:
            hdr += "  schema=(inline)"
        return hdr

    # ---------- Pipeline composition ----------
    def __gt__(self, other: Any):
        """
        Source > Sink creates a Pipeline.
        (Do NOT encourage chained a > b > c in one expression; Python chains comparisons.)
        """
        from skimslim.models.pipeline import Pipeline

        return Pipeline(self).then(other)


def _header(table, shard: str) -> Tuple[str, ...]:
    try:
        return tuple(etl.header(table))
    except StopIteration:
        # empty file: no header, no records
        return ()
    except OSError as e:
        raise SkimSlimError(
            "E_SOURCE_READ",
            f"Could not read shard '{shard}': {e}",
            hint="Check that the file exists and is readable.",
        ) from e


class Dataset:
    """The logical dataset: shards concatenated in order, read sequentially.

    Opening does not read records. `length()` counts once and caches; reads
    walk forward with a cached current row, and a backwards seek reopens the
    shard.
    """

    def __init__(self, source: Source, shards: List[str]):
        self.source = source
        self.shards = list(shards)
        self._tables: List[Any] = [None] * len(self.shards)
        self._schemas: List[Optional[Schema]] = [None] * len(self.shards)
        self._conns: Dict[int, sqlite3.Connection] = {}
        self._starts: Optional[List[int]] = None
        self._length: Optional[int] = None

        self._it = None
        self._it_shard = -1
        self._it_pos = 0
        self._row: Optional[Tuple[Any, ...]] = None
        self._row_index = -1
        self._closed = False

    def __enter__(self) -> "Dataset":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- shard access ----------
    def _table(self, k: int):
        if self._tables[k] is None:
            conn = None
            if self.source.type == "sqlite":
                conn = self._conns.get(k) or self.source.connect(self.shards[k])
                self._conns[k] = conn
            self._tables[k] = self.source.table(self.shards[k], conn)
        return self._tables[k]

    def refresh(self, k: int) -> Schema:
        """Schema of shard k. Called whenever reading moves into a new shard."""
        if self._schemas[k] is None:
            try:
                self._schemas[k] = self.source.shard_schema(self.shards[k], self._table(k), self._conns.get(k))
            except sqlite3.Error as e:
                raise SkimSlimError(
                    "E_SOURCE_READ",
                    f"Could not read shard '{self.shards[k]}': {e}",
                    hint="Check that the file is a sqlite database and is readable.",
                ) from e
        return self._schemas[k]

    def schema(self) -> Schema:
        """Schema of the first shard that has a header; empty shards carry no columns."""
        for k in range(len(self.shards)):
            shard_schema = self.refresh(k)
            if len(shard_schema):
                if k:
                    _log.info("Skipping %d header-less shard(s) for the dataset schema", k)
                return shard_schema
        return self.refresh(0)

    def length(self) -> int:
        if self._length is None:
            starts = []
            total = 0
            for k, shard in enumerate(self.shards):
                starts.append(total)
                try:
                    count = etl.nrows(self._table(k))
                except StopIteration:
                    count = 0
                except (OSError, sqlite3.Error) as e:
                    raise SkimSlimError(
                        "E_SOURCE_READ",
                        f"Could not read shard '{shard}': {e}",
                        hint="Check that the file exists and is readable.",
                    ) from e
                _log.debug("Shard %s has %d entries", shard, count)
                total += count
            self._starts = starts
            self._length = total
        return self._length

    def shard_at(self, index: int) -> int:
        self.length()
        return bisect.bisect_right(self._starts, index) - 1

    # ---------- records ----------
    def _open_iter(self, k: int) -> None:
        if self._it is not None and hasattr(self._it, "close"):
            self._it.close()
        self._it = iter(etl.data(self._table(k)))
        self._it_shard = k
        self._it_pos = 0

    def _seek(self, index: int) -> Tuple[Any, ...]:
        if index == self._row_index:
            return self._row
        if self._closed:
            raise SkimSlimError("E_SOURCE_CLOSED", "Dataset is closed.")
        if not 0 <= index < self.length():
            raise SkimSlimError(
                "E_RECORD_INDEX",
                f"Entry {index} is out of range (0..{self.length() - 1}).",
            )
        k = self.shard_at(index)
        local = index - self._starts[k]
        if k != self._it_shard or local < self._it_pos:
            self._open_iter(k)
        shard = self.shards[k]
        try:
            while self._it_pos < local:
                next(self._it)
                self._it_pos += 1
            row = tuple(next(self._it))
        except StopIteration:
            raise SkimSlimError(
                "E_SOURCE_READ",
                f"Shard '{shard}' ended before entry {local}; it changed while being read.",
            )
        except (OSError, sqlite3.Error) as e:
            raise SkimSlimError(
                "E_SOURCE_READ",
                f"Could not read shard '{shard}': {e}",
            ) from e
        self._it_pos = local + 1

        width = len(self.refresh(k))
        if len(row) != width:
            raise SkimSlimError(
                "E_RECORD_WIDTH",
                f"Entry {local} of shard '{shard}' has {len(row)} value(s); the header has {width}.",
                hint="Every row must have one value per column.",
            )
        self._row, self._row_index = row, index
        return row

    def read(self, index: int) -> Tuple[Any, ...]:
        """The full stored record, values untouched."""
        return self._seek(index)

    def read_columns(self, index: int, names: Iterable[str]) -> Dict[str, Any]:
        """Typed values of the named columns only."""
        row = self._seek(index)
        schema = self.refresh(self.shard_at(index))
        out: Dict[str, Any] = {}
        for name in names:
            column = schema.get(name)
            raw = row[schema.index(name)]
            try:
                out[name] = column.convert(raw)
            except ValueError as e:
                raise SkimSlimError(
                    "E_RECORD_VALUE",
                    f"Entry {index}: value {raw!r} of column {name!r} is not a valid {column.type}"
                    + (" array" if column.array else "") + ".",
                    hint=f"Declare the column type in an inline schema or fix the data. ({e})",
                ) from e
        return out

    def close(self) -> None:
        if self._it is not None and hasattr(self._it, "close"):
            self._it.close()
        self._it = None
        for conn in self._conns.values():
            conn.close()
        self._conns.clear()
        self._closed = True
