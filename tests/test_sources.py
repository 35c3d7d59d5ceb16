"""
Unit tests for sources.py
"""

import datetime
import pickle
import tempfile
from pathlib import Path

import polars as pl
import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from hf_cohort.config import SOURCE_SPECS, SourceSpec
from hf_cohort.sources import BucketSource, MalformedSourceError, find_bucket_files, open_bucket_sources

SMALL_SPEC = SourceSpec("small", "Svcdate", ("Svcdate", "Dx1", "Dx2"))


def small_frame(keys, dates, dx1, dx2=None):
    return pl.DataFrame(
        {
            "Enrolid": keys,
            "Svcdate": dates,
            "Dx1": dx1,
            "Dx2": dx2 if dx2 is not None else [None] * len(keys),
        },
        schema={"Enrolid": pl.Int64, "Svcdate": pl.Int64, "Dx1": pl.Utf8, "Dx2": pl.Utf8},
    )


# ============================================================================
# FILE DISCOVERY
# ============================================================================


def test_find_bucket_files_directory():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        bucket_dir = root / "0003"
        bucket_dir.mkdir()
        (bucket_dir / "part_1.parquet").touch()
        (bucket_dir / "part_0.parquet").touch()
        (bucket_dir / "notes.txt").touch()

        files = find_bucket_files(root, 3)

        assert [f.name for f in files] == ["part_0.parquet", "part_1.parquet"]


def test_find_bucket_files_single_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "0012.parquet").touch()

        assert find_bucket_files(root, 12) == [root / "0012.parquet"]


def test_find_bucket_files_not_found():
    with tempfile.TemporaryDirectory() as tmpdir:
        assert find_bucket_files(Path(tmpdir), 0) == []


# ============================================================================
# GROUPING
# ============================================================================


def test_groups_across_chunk_boundaries():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        small_frame([1, 1, 1, 2, 3, 3], [10, 11, 12, 20, 30, 31], ["a", "b", "c", "d", "e", "f"]).write_parquet(path)

        source = BucketSource(SMALL_SPEC, [path], bucket=0, chunk_size=2)
        groups = list(source)

        assert [k for k, _ in groups] == [1, 2, 3]
        assert groups[0][1]["Svcdate"] == [10, 11, 12]
        assert groups[1][1]["Svcdate"] == [20]
        assert groups[2][1]["Svcdate"] == [30, 31]


def test_groups_across_part_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        bucket_dir = Path(tmpdir) / "0000"
        bucket_dir.mkdir()
        small_frame([1, 2], [10, 20], [None, None]).write_parquet(bucket_dir / "part_0.parquet")
        small_frame([2, 5], [21, 50], [None, None]).write_parquet(bucket_dir / "part_1.parquet")

        source = BucketSource(SMALL_SPEC, find_bucket_files(Path(tmpdir), 0), bucket=0)
        groups = dict(source)

        assert list(groups) == [1, 2, 5]
        assert groups[2]["Svcdate"] == [20, 21]


def test_iteration_restarts():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        small_frame([1, 2], [10, 20], [None, None]).write_parquet(path)

        source = BucketSource(SMALL_SPEC, [path])

        assert [k for k, _ in source] == [1, 2]
        assert [k for k, _ in source] == [1, 2]


def test_empty_file_yields_nothing():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        small_frame([], [], []).write_parquet(path)

        assert list(BucketSource(SMALL_SPEC, [path])) == []


# ============================================================================
# NORMALISATION
# ============================================================================


def test_dx_codes_mapped_to_ids():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        small_frame([1, 1], [10, 11], ["4280", "BOGUS"], ["I50.9", None]).write_parquet(path)

        source = BucketSource(SMALL_SPEC, [path], dx_codes={"4280": 0, "I50.9": 4})
        (key, rows), = list(source)

        assert rows["Dx1"] == [0, None]
        assert rows["Dx2"] == [4, None]


def test_integer_dx_columns_kept():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        pl.DataFrame(
            {"Enrolid": [1], "Svcdate": [10], "Dx1": [7], "Dx2": [None]},
            schema={"Enrolid": pl.Int64, "Svcdate": pl.Int64, "Dx1": pl.Int64, "Dx2": pl.Int64},
        ).write_parquet(path)

        (key, rows), = list(BucketSource(SMALL_SPEC, [path], dx_codes={"4280": 0}))

        assert rows["Dx1"] == [7]


def test_dictionary_encoded_dx_columns_mapped_to_ids():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        table = pa.table(
            {
                "Enrolid": pa.array([1, 1], pa.int64()),
                "Svcdate": pa.array([10, 11], pa.int64()),
                "Dx1": pa.array(["4280", "25000"]).dictionary_encode(),
                "Dx2": pa.array([None, "BOGUS"], pa.string()).dictionary_encode(),
            }
        )
        pq.write_table(table, path)

        (key, rows), = list(BucketSource(SMALL_SPEC, [path], dx_codes={"4280": 0, "25000": 2}))

        assert rows["Dx1"] == [0, 2]
        assert rows["Dx2"] == [None, None]


def test_unsupported_dx_column_type_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        pl.DataFrame(
            {"Enrolid": [1], "Svcdate": [10], "Dx1": [428.0], "Dx2": [None]},
            schema={"Enrolid": pl.Int64, "Svcdate": pl.Int64, "Dx1": pl.Float64, "Dx2": pl.Utf8},
        ).write_parquet(path)

        with pytest.raises(MalformedSourceError, match="Dx1 has unsupported type") as excinfo:
            list(BucketSource(SMALL_SPEC, [path], bucket=2, dx_codes={"4280": 0}))

        assert excinfo.value.bucket == 2


def test_date_columns_converted_to_epoch_days():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        pl.DataFrame(
            {
                "Enrolid": [1, 1],
                "Svcdate": [datetime.date(1960, 1, 11), datetime.date(1961, 1, 1)],
                "Dx1": [None, None],
                "Dx2": [None, None],
            },
            schema={"Enrolid": pl.Int64, "Svcdate": pl.Date, "Dx1": pl.Utf8, "Dx2": pl.Utf8},
        ).write_parquet(path)

        (key, rows), = list(BucketSource(SMALL_SPEC, [path]))

        assert rows["Svcdate"] == [10, 366]


# ============================================================================
# MALFORMED SOURCES
# ============================================================================


def test_unsorted_source_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        small_frame([2, 1], [10, 20], [None, None]).write_parquet(path)

        with pytest.raises(MalformedSourceError, match="not sorted"):
            list(BucketSource(SMALL_SPEC, [path], bucket=0))


def test_unsorted_across_chunks_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        small_frame([3, 4, 1, 2], [1, 2, 3, 4], [None] * 4).write_parquet(path)

        with pytest.raises(MalformedSourceError, match="across chunks"):
            list(BucketSource(SMALL_SPEC, [path], bucket=0, chunk_size=2))


def test_missing_column_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "0000.parquet"
        pl.DataFrame({"Enrolid": [1], "Svcdate": [10], "Dx1": ["4280"]}).write_parquet(path)

        with pytest.raises(MalformedSourceError, match="missing columns") as excinfo:
            BucketSource(SMALL_SPEC, [path], bucket=4)

        assert excinfo.value.bucket == 4
        assert excinfo.value.source == "small"


def test_no_files_raises():
    with pytest.raises(MalformedSourceError, match="no files"):
        BucketSource(SMALL_SPEC, [], bucket=1)


def test_malformed_source_error_pickles():
    error = MalformedSourceError("bucket 3, source 'drug': boom", bucket=3, source="drug")
    restored = pickle.loads(pickle.dumps(error))

    assert str(restored) == str(error)
    assert restored.bucket == 3
    assert restored.source == "drug"


def test_open_bucket_sources_in_join_order():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        roots = {}
        for spec in SOURCE_SPECS:
            schema = {"Enrolid": pl.Int64}
            schema.update({c: pl.Utf8 if c.startswith("Dx") else pl.Int64 for c in spec.columns})
            (root / spec.name).mkdir()
            pl.DataFrame(schema=schema).write_parquet(root / spec.name / "0000.parquet")
            roots[spec.name] = str(root / spec.name)

        sources = open_bucket_sources(SOURCE_SPECS, roots, 0)

        assert [s.name for s in sources] == [s.name for s in SOURCE_SPECS]

        with pytest.raises(MalformedSourceError, match="outpatient"):
            (root / "outpatient" / "0000.parquet").unlink()
            open_bucket_sources(SOURCE_SPECS, roots, 0)
