import os
import sqlite3

import petl as etl
import pytest

from skimslim import Sink, SkimSlimError
from skimslim.errors import DestinationExists, SinkCommitError, SinkOpenError
from skimslim.models.columns import Column


COLUMNS = [Column("run", "integer"), Column("pt", "number"), Column("jets", "number", array=True)]


def _tmp_files(directory):
    return sorted(p.name for p in directory.iterdir() if p.name.endswith(".tmp"))


def test_sink_type_inferred_from_suffix(tmp_path):
    assert Sink(str(tmp_path / "out.csv")).type == "csv"
    assert Sink(str(tmp_path / "out.sqlite")).type == "sqlite"


def test_sink_type_cannot_be_inferred(tmp_path):
    with pytest.raises(SinkOpenError) as ex:
        Sink(str(tmp_path / "out.parquet"))
    assert getattr(ex.value, "code", None) == "E_SINK_TYPE_INFER"


def test_sink_type_unsupported(tmp_path):
    with pytest.raises(SkimSlimError) as ex:
        Sink(str(tmp_path / "out.csv"), type="json")
    assert getattr(ex.value, "code", None) == "E_SINK_TYPE_UNSUPPORTED"


def test_sink_dir_not_found(tmp_path):
    with pytest.raises(SkimSlimError) as ex:
        Sink(str(tmp_path / "missing" / "out.csv"))
    assert getattr(ex.value, "code", None) == "E_SINK_DIR_NOT_FOUND"


def test_sink_not_writable(tmp_path, monkeypatch):
    monkeypatch.setattr(os, "access", lambda path, mode: False)
    with pytest.raises(SkimSlimError) as ex:
        Sink(str(tmp_path / "out.csv"))
    assert getattr(ex.value, "code", None) == "E_SINK_NOT_WRITABLE"


def test_open_refuses_existing_destination(tmp_path):
    out = tmp_path / "out.csv"
    out.write_text("keep me\n", encoding="utf-8")

    with pytest.raises(DestinationExists) as ex:
        Sink(str(out)).open()
    assert getattr(ex.value, "code", None) == "E_SINK_EXISTS"
    assert out.read_text(encoding="utf-8") == "keep me\n"
    assert _tmp_files(tmp_path) == []


def test_csv_writer_commits_atomically(tmp_path):
    """Nothing appears at the destination until commit."""
    out = tmp_path / "out.csv"
    writer = Sink(str(out)).open()
    writer.begin(COLUMNS)
    writer.append((1, "10.5", "[1, 2]"))
    writer.append((2, "20.0", "[]"))

    assert not out.exists()
    assert len(_tmp_files(tmp_path)) == 1

    writer.commit()
    assert writer.state == "committed"
    assert writer.count == 2
    assert _tmp_files(tmp_path) == []
    assert list(etl.fromcsv(str(out))) == [
        ("run", "pt", "jets"),
        ("1", "10.5", "[1, 2]"),
        ("2", "20.0", "[]"),
    ]


def test_csv_writer_batches(tmp_path):
    out = tmp_path / "out.csv"
    writer = Sink(str(out), batch_size=2).open()
    writer.begin([Column("n", "integer")])
    for n in range(5):
        writer.append((n,))
    writer.commit()
    assert [r[0] for r in etl.data(etl.fromcsv(str(out)))] == ["0", "1", "2", "3", "4"]


def test_csv_writer_header_only_when_empty(tmp_path):
    out = tmp_path / "out.csv"
    writer = Sink(str(out)).open()
    writer.begin(COLUMNS)
    writer.commit()
    assert list(etl.fromcsv(str(out))) == [("run", "pt", "jets")]


def test_discard_leaves_nothing_behind(tmp_path):
    out = tmp_path / "out.csv"
    writer = Sink(str(out)).open()
    writer.begin(COLUMNS)
    writer.append((1, 1.0, "[]"))
    writer.discard()
    writer.discard()

    assert writer.state == "discarded"
    assert not out.exists()
    assert _tmp_files(tmp_path) == []


def test_writer_state_errors(tmp_path):
    writer = Sink(str(tmp_path / "out.csv")).open()
    with pytest.raises(SkimSlimError) as ex:
        writer.append((1,))
    assert getattr(ex.value, "code", None) == "E_SINK_STATE"

    writer.begin([Column("n")])
    writer.commit()
    with pytest.raises(SkimSlimError) as ex:
        writer.append((2,))
    assert getattr(ex.value, "code", None) == "E_SINK_STATE"


def test_replace_overwrites_existing_output(tmp_path):
    out = tmp_path / "out.csv"
    out.write_text("old\n", encoding="utf-8")

    writer = Sink(str(out), replace=True).open()
    writer.begin([Column("n", "integer")])
    writer.append((7,))
    # the old file stays in place until commit
    assert out.read_text(encoding="utf-8") == "old\n"
    writer.commit()
    assert list(etl.fromcsv(str(out))) == [("n",), ("7",)]


def test_commit_failure_is_reported_and_cleaned_up(tmp_path, monkeypatch):
    out = tmp_path / "out.csv"
    writer = Sink(str(out)).open()
    writer.begin([Column("n", "integer")])
    writer.append((1,))

    def _boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)
    with pytest.raises(SinkCommitError) as ex:
        writer.commit()
    assert getattr(ex.value, "code", None) == "E_SINK_COMMIT"
    assert writer.state == "discarded"
    assert not out.exists()
    assert _tmp_files(tmp_path) == []


def test_commit_refuses_destination_created_meanwhile(tmp_path):
    out = tmp_path / "out.csv"
    writer = Sink(str(out)).open()
    writer.begin([Column("n", "integer")])
    out.write_text("someone else\n", encoding="utf-8")

    with pytest.raises(DestinationExists):
        writer.commit()
    assert out.read_text(encoding="utf-8") == "someone else\n"
    assert _tmp_files(tmp_path) == []


def test_sqlite_writer(tmp_path):
    """The sqlite output declares column types; arrays are stored as text."""
    out = tmp_path / "out.db"
    writer = Sink(str(out)).open(table="events")
    writer.begin(COLUMNS)
    writer.append((1, 10.5, "[1, 2]"))
    writer.append((2, 20.0, "[]"))
    writer.commit()

    conn = sqlite3.connect(str(out))
    try:
        decl = [(r[1], r[2]) for r in conn.execute("PRAGMA table_info(events)")]
        rows = conn.execute("SELECT run, pt, jets FROM events ORDER BY rowid").fetchall()
    finally:
        conn.close()
    assert decl == [("run", "INTEGER"), ("pt", "REAL"), ("jets", "TEXT")]
    assert rows == [(1, 10.5, "[1, 2]"), (2, 20.0, "[]")]


def test_sqlite_sink_table_option_wins(tmp_path):
    out = tmp_path / "out.db"
    writer = Sink(str(out), table="skim").open(table="events")
    assert writer.table == "skim"
    writer.discard()


def test_sqlite_writer_needs_columns(tmp_path):
    writer = Sink(str(tmp_path / "out.db")).open(table="events")
    with pytest.raises(SkimSlimError) as ex:
        writer.begin([])
    assert getattr(ex.value, "code", None) == "E_SINK_NO_COLUMNS"
    assert writer.state == "discarded"
    assert _tmp_files(tmp_path) == []


def test_directory_sync_failure_after_rename_still_commits(tmp_path, monkeypatch):
    """Once the output is in place the run is committed, even if the directory sync fails."""
    from skimslim.models import sinks

    real_fsync = sinks._fsync_path

    def _fsync(path, *, directory=False):
        if directory:
            raise OSError("sync not supported")
        real_fsync(path)

    monkeypatch.setattr(sinks, "_fsync_path", _fsync)
    out = tmp_path / "out.csv"
    writer = Sink(str(out)).open()
    writer.begin([Column("n", "integer")])
    writer.append((1,))
    writer.commit()

    assert writer.state == "committed"
    assert list(etl.fromcsv(str(out))) == [("n",), ("1",)]
    assert _tmp_files(tmp_path) == []
