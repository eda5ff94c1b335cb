import sqlite3

import pytest

from skimslim import Source, SkimSlimError
from skimslim.tests import DATA_DIR


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _make_db(path, rows, table="events"):
    conn = sqlite3.connect(str(path))
    conn.execute(f"CREATE TABLE {table} (run INTEGER, pt REAL, channel TEXT)")
    conn.executemany(f"INSERT INTO {table} VALUES (?, ?, ?)", rows)
    conn.commit()
    conn.close()
    return path


def test_source_not_found(tmp_path):
    with pytest.raises(SkimSlimError) as ex:
        Source(str(tmp_path / "missing.csv"))
    assert getattr(ex.value, "code", None) == "E_SOURCE_NOT_FOUND"


def test_source_type_cannot_be_inferred(tmp_path):
    p = _write(tmp_path / "events.txt", "a\n1\n")
    with pytest.raises(SkimSlimError) as ex:
        Source(str(p))
    assert getattr(ex.value, "code", None) == "E_SOURCE_TYPE_INFER"

    # an explicit type is enough
    assert Source(str(p), type="csv").type == "csv"


def test_source_type_unsupported(tmp_path):
    p = _write(tmp_path / "events.csv", "a\n1\n")
    with pytest.raises(SkimSlimError) as ex:
        Source(str(p), type="parquet")
    assert getattr(ex.value, "code", None) == "E_SOURCE_TYPE_UNSUPPORTED"


def test_source_inline_schema_must_name_fields(tmp_path):
    p = _write(tmp_path / "events.csv", "a\n1\n")
    with pytest.raises(SkimSlimError) as ex:
        Source(str(p), schema={"fields": [{"type": "integer"}]})
    assert getattr(ex.value, "code", None) == "E_SCHEMA_INLINE_FIELDS"


def test_csv_schema_is_inferred_with_frictionless(tmp_path):
    """Column types come from a bounded sample when no schema is given."""
    p = _write(tmp_path / "events.csv", "run,pt,channel\n1,10.5,mu\n2,20.0,e\n3,7.25,mu\n")
    schema = Source(str(p)).peek_schema()
    assert schema.names == ["run", "pt", "channel"]
    assert [c.type for c in schema] == ["integer", "number", "string"]


def test_inline_schema_overrides_inference(tmp_path):
    p = _write(tmp_path / "events.csv", "run,code\n1,007\n2,010\n")
    src = Source(str(p), schema={"fields": [{"name": "code", "type": "string"}]})
    schema = src.peek_schema()
    assert schema.get("code").type == "string"
    assert schema.get("run").type == "integer"

    with src.open() as ds:
        assert ds.read_columns(0, ["code"]) == {"code": "007"}


def test_dataset_reads_are_typed_only_on_request(tmp_path):
    """read() returns stored values; read_columns() converts the named ones."""
    p = _write(tmp_path / "events.csv", "run,pt\n1,10.5\n2,20.0\n")
    with Source(str(p)).open() as ds:
        assert ds.length() == 2
        assert ds.read(1) == ("2", "20.0")
        assert ds.read_columns(1, ["pt"]) == {"pt": 20.0}
        # backwards seek reopens the shard
        assert ds.read(0) == ("1", "10.5")


def test_dataset_record_index_out_of_range(tmp_path):
    p = _write(tmp_path / "events.csv", "run\n1\n")
    with Source(str(p)).open() as ds:
        with pytest.raises(SkimSlimError) as ex:
            ds.read(5)
    assert getattr(ex.value, "code", None) == "E_RECORD_INDEX"


def test_dataset_record_width_mismatch(tmp_path):
    p = _write(tmp_path / "events.csv", "a,b\n1,2\n3,4,5\n")
    src = Source(str(p), schema={"fields": [{"name": "a", "type": "integer"}, {"name": "b", "type": "integer"}]})
    with src.open() as ds:
        assert ds.read(0) == ("1", "2")
        with pytest.raises(SkimSlimError) as ex:
            ds.read(1)
    assert getattr(ex.value, "code", None) == "E_RECORD_WIDTH"


def test_dataset_bad_value_in_requested_column(tmp_path):
    p = _write(tmp_path / "events.csv", "a\n1\nx\n")
    src = Source(str(p), schema={"fields": [{"name": "a", "type": "integer"}]})
    with src.open() as ds:
        assert ds.read_columns(0, ["a"]) == {"a": 1}
        with pytest.raises(SkimSlimError) as ex:
            ds.read_columns(1, ["a"])
    assert getattr(ex.value, "code", None) == "E_RECORD_VALUE"


def test_directory_shards_are_ordered(tmp_path):
    """A directory reads every supported file below it, sorted by path."""
    d = tmp_path / "shards"
    _write(d / "b.csv", "a\n3\n4\n")
    _write(d / "a.csv", "a\n1\n2\n")
    _write(d / "sub" / "c.csv", "a\n5\n")
    _write(d / "notes.txt", "not data\n")

    src = Source(str(d))
    assert [s.rsplit("/", 1)[-1] for s in src.shards()] == ["a.csv", "b.csv", "c.csv"]

    with src.open() as ds:
        assert ds.length() == 5
        assert [ds.shard_at(i) for i in range(5)] == [0, 0, 1, 1, 2]
        assert [ds.read(i)[0] for i in range(5)] == ["1", "2", "3", "4", "5"]


def test_glob_shards(tmp_path):
    _write(tmp_path / "run2.csv", "a\n2\n")
    _write(tmp_path / "run1.csv", "a\n1\n")
    _write(tmp_path / "other.csv", "a\n9\n")

    src = Source(str(tmp_path / "run*.csv"))
    with src.open() as ds:
        assert [ds.read(i)[0] for i in range(ds.length())] == ["1", "2"]


def test_empty_csv_shard_has_no_entries(tmp_path):
    _write(tmp_path / "a.csv", "a\n1\n")
    _write(tmp_path / "b.csv", "a\n")
    with Source(str(tmp_path / "*.csv")).open() as ds:
        assert ds.length() == 1


def test_sqlite_source(tmp_path):
    """sqlite shards read the container table; types come from the declaration."""
    db = _make_db(tmp_path / "events.db", [(1, 10.5, "mu"), (2, 20.0, "e")])
    src = Source(str(db), container="events")
    assert src.type == "sqlite"

    with src.open() as ds:
        schema = ds.schema()
        assert [(c.name, c.type) for c in schema] == [("run", "integer"), ("pt", "number"), ("channel", "string")]
        assert ds.length() == 2
        assert ds.read(1) == (2, 20.0, "e")
        assert ds.read_columns(0, ["channel", "pt"]) == {"channel": "mu", "pt": 10.5}


def test_sqlite_source_needs_container(tmp_path):
    db = _make_db(tmp_path / "events.db", [])
    with pytest.raises(SkimSlimError) as ex:
        Source(str(db))
    assert getattr(ex.value, "code", None) == "E_SOURCE_CONTAINER"


def test_sqlite_source_missing_table(tmp_path):
    db = _make_db(tmp_path / "events.db", [])
    with Source(str(db), container="nope").open() as ds:
        with pytest.raises(SkimSlimError) as ex:
            ds.schema()
    assert getattr(ex.value, "code", None) == "E_SOURCE_CONTAINER"


def test_closed_dataset_refuses_reads(tmp_path):
    p = _write(tmp_path / "events.csv", "a\n1\n2\n")
    ds = Source(str(p)).open()
    ds.length()
    ds.close()
    with pytest.raises(SkimSlimError) as ex:
        ds.read(1)
    assert getattr(ex.value, "code", None) == "E_SOURCE_CLOSED"


def test_bundled_events_file():
    src = Source(str(DATA_DIR / "events.csv"),
                 schema={"fields": [{"name": "jet_pt", "type": "array", "arrayItem": {"type": "number"}}]})
    with src.open() as ds:
        assert ds.length() == 5
        assert ds.read_columns(2, ["jet_pt", "channel"]) == {"jet_pt": [120.4, 60.3, 22.8], "channel": "mu"}
        assert ds.read_columns(1, ["jet_pt"]) == {"jet_pt": []}


def test_dataset_schema_skips_headerless_shards(tmp_path):
    _write(tmp_path / "a.csv", "")
    _write(tmp_path / "b.csv", "run,pt\n1,2.5\n")
    src = Source(str(tmp_path / "*.csv"))
    assert src.peek_schema().names == ["run", "pt"]
    with src.open() as ds:
        assert ds.length() == 1
        assert ds.shard_at(0) == 1
        assert ds.read(0) == ("1", "2.5")
