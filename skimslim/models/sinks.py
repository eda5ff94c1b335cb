from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Sequence, Tuple

import petl as etl

from skimslim.errors import SkimSlimError, DestinationExists, SinkOpenError, SinkCommitError
from skimslim.models.columns import Column
from skimslim.util import _infer_type_from_uri, _fsync_path, _quote_ident

_log = logging.getLogger("skimslim.sinks")

SUPPORTED_TYPES = ("csv", "sqlite")

_SQLITE_DECL = {
    "integer": "INTEGER",
    "year": "INTEGER",
    "number": "REAL",
    "string": "TEXT",
    "boolean": "BOOLEAN",
}


@dataclass(frozen=True)
class Sink:
    uri: str
    type: Optional[str] = None
    replace: bool = False
    table: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    # rows buffered before each petl write
    batch_size: int = 1000

    def __post_init__(self) -> None:
        object.__setattr__(self, "uri", str(self.uri))
        inferred = self.type or _infer_type_from_uri(self.uri)
        object.__setattr__(self, "type", inferred)
        if self.type is None:
            raise SinkOpenError(
                "E_SINK_TYPE_INFER",
                f"Could not infer Sink type from uri='{self.uri}'.",
                hint="Provide type explicitly, e.g. Sink('out.data', type='csv').",
            )

        if self.type not in SUPPORTED_TYPES:
            raise SinkOpenError(
                "E_SINK_TYPE_UNSUPPORTED",
                f"Sink type '{self.type}' is not supported.",
                hint="Currently supported sink types: " + ", ".join(SUPPORTED_TYPES) + ".",
            )

        # Fail fast: ensure the output directory exists and is writable before running the pipeline.
        parent = os.path.dirname(self.uri) or "."
        if not os.path.isdir(parent):
            raise SinkOpenError(
                "E_SINK_DIR_NOT_FOUND",
                f"Output directory does not exist: '{parent}'.",
                hint="Create the directory or choose a different output path.",
            )
        if not os.access(parent, os.W_OK):
            raise SinkOpenError(
                "E_SINK_NOT_WRITABLE",
                f"Output directory is not writable: '{parent}'.",
                hint="Check permissions or choose a different output location.",
            )

    def exists(self) -> bool:
        return os.path.lexists(self.uri)

    def open(self, *, table: Optional[str] = None) -> "SinkWriter":
        """Reserve a temporary file next to the destination.

        Nothing appears at `uri` until `SinkWriter.commit()` succeeds.
        """
        if self.exists() and not self.replace:
            raise DestinationExists(
                "E_SINK_EXISTS",
                f"Output already exists: '{self.uri}'.",
                hint="Pass replace=True (CLI: --replace) to overwrite it, or choose another output.",
            )
        parent = os.path.dirname(self.uri) or "."
        try:
            fd, tmp = tempfile.mkstemp(prefix="." + os.path.basename(self.uri) + ".", suffix=".tmp", dir=parent)
            os.close(fd)
        except OSError as e:
            raise SinkOpenError(
                "E_SINK_OPEN",
                f"Could not create a temporary output next to '{self.uri}': {e}",
                hint="Check permissions and free space in the output directory.",
            ) from e

        _log.info("Output: %s (%s, %s)", self.uri, self.type, "replace" if self.replace else "create")
        if self.type == "sqlite":
            return SqliteSinkWriter(self, tmp, self.table or table or "data")
        return CsvSinkWriter(self, tmp, self.table or table or "data")

    def __str__(self) -> str:
        mode = "replace" if self.replace else "create"
        return f'Sink("{self.uri}")  kind={self.type}  mode={mode}'


class SinkWriter:
    """Append-only writer over a temporary file; `commit()` publishes it.

    States: open -> committed | discarded. `begin()` must be called once
    with the output columns before the first `append()`.
    """

    def __init__(self, sink: Sink, tmp_path: str, table: str):
        self.sink = sink
        self.tmp_path = tmp_path
        self.table = table
        self.state = "open"
        self.count = 0
        self._columns: Optional[List[Column]] = None
        self._buffer: List[Tuple[Any, ...]] = []

    @property
    def header(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self._columns or ())

    def _require(self, began: bool = True) -> None:
        if self.state != "open":
            raise SkimSlimError("E_SINK_STATE", f"Sink writer is {self.state}; no more writes are accepted.")
        if began and self._columns is None:
            raise SkimSlimError("E_SINK_STATE", "Sink writer has no columns yet; call begin() first.")

    def begin(self, columns: Sequence[Column]) -> None:
        self._require(began=False)
        self._columns = list(columns)
        self._guard(self._start)

    def append(self, row: Sequence[Any]) -> None:
        self._require()
        self._buffer.append(tuple(row))
        self.count += 1
        if len(self._buffer) >= self.sink.batch_size:
            self.flush()

    def flush(self) -> None:
        self._require()
        if not self._buffer:
            return
        rows, self._buffer = self._buffer, []
        self._guard(self._write, rows)

    def commit(self) -> None:
        """Flush, sync and atomically move the output into place."""
        self.flush()
        try:
            self._guard(self._finish)
            _fsync_path(self.tmp_path)
            if not self.sink.replace and self.sink.exists():
                raise DestinationExists(
                    "E_SINK_EXISTS",
                    f"Output appeared while the run was writing: '{self.sink.uri}'.",
                    hint="Another process created it; pass replace=True to overwrite.",
                )
            os.replace(self.tmp_path, self.sink.uri)
        except SkimSlimError:
            self.discard()
            raise
        except OSError as e:
            self.discard()
            raise SinkCommitError(
                "E_SINK_COMMIT",
                f"Could not commit output '{self.sink.uri}': {type(e).__name__}: {e}",
                hint="Check free space and permissions in the output directory.",
            ) from e
        self.state = "committed"
        # the output is complete and in place; only its directory entry may be unsynced
        try:
            _fsync_path(os.path.dirname(os.path.abspath(self.sink.uri)), directory=True)
        except OSError as e:
            _log.warning("Could not sync directory of %s: %s", self.sink.uri, e)
        _log.info("Committed %d entries to %s", self.count, self.sink.uri)

    def discard(self) -> None:
        """Drop everything written so far. Safe to call more than once."""
        if self.state != "open":
            return
        self.state = "discarded"
        self._buffer = []
        try:
            self._close()
        finally:
            if os.path.exists(self.tmp_path):
                os.remove(self.tmp_path)
        _log.info("Discarded uncommitted output for %s", self.sink.uri)

    def _guard(self, fn, *args) -> None:
        try:
            fn(*args)
        except SkimSlimError:
            self.discard()
            raise
        except FileNotFoundError as e:
            self.discard()
            parent = os.path.dirname(self.sink.uri) or "."
            raise SinkCommitError(
                "E_SINK_DIR_NOT_FOUND",
                f"Output directory does not exist: '{parent}'.",
                hint="Create the directory or choose a different output path.",
            ) from e
        except PermissionError as e:
            self.discard()
            parent = os.path.dirname(self.sink.uri) or "."
            raise SinkCommitError(
                "E_SINK_NOT_WRITABLE",
                f"Cannot write to output directory: '{parent}'.",
                hint="Check permissions or choose a different output location.",
            ) from e
        except (OSError, sqlite3.Error, ValueError, TypeError) as e:
            self.discard()
            raise SinkCommitError(
                "E_SINK_WRITE",
                f"Could not write sink '{self.sink.uri}': {type(e).__name__}: {e}",
                hint="Check file permissions and Sink options (delimiter/encoding).",
            ) from e

    # format hooks
    def _start(self) -> None:
        raise NotImplementedError

    def _write(self, rows: List[Tuple[Any, ...]]) -> None:
        raise NotImplementedError

    def _finish(self) -> None:
        pass

    def _close(self) -> None:
        pass


class CsvSinkWriter(SinkWriter):
    def _start(self) -> None:
        etl.tocsv(etl.wrap([self.header]), self.tmp_path, **self.sink.options)

    def _write(self, rows: List[Tuple[Any, ...]]) -> None:
        etl.appendcsv(etl.wrap([self.header] + rows), self.tmp_path, **self.sink.options)


class SqliteSinkWriter(SinkWriter):
    def __init__(self, sink: Sink, tmp_path: str, table: str):
        super().__init__(sink, tmp_path, table)
        self._conn: Optional[sqlite3.Connection] = None

    def _start(self) -> None:
        if not self._columns:
            raise SinkOpenError(
                "E_SINK_NO_COLUMNS",
                "A sqlite output table needs at least one enabled column.",
                hint="Enable a column with enable=[...] (CLI: --enable NAME).",
            )
        self._conn = sqlite3.connect(self.tmp_path)
        cols = []
        for c in self._columns:
            decl = "TEXT" if c.array else _SQLITE_DECL.get(c.type, "")
            cols.append(f"{_quote_ident(c.name)} {decl}".rstrip())
        self._conn.execute(f"CREATE TABLE {_quote_ident(self.table)} ({', '.join(cols)})")
        self._conn.commit()

    def _write(self, rows: List[Tuple[Any, ...]]) -> None:
        etl.appenddb(etl.wrap([self.header] + rows), self._conn, self.table)

    def _finish(self) -> None:
        self._close()

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
