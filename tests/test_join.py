"""
Unit tests for KeyedMultiJoin.

Sources are duck-typed: anything that iterates `(key, rows)` pairs in
ascending key order can be joined, so plain lists stand in for BucketSource.
"""

import tempfile
from pathlib import Path

import polars as pl
import pytest

from hf_cohort.config import SourceSpec
from hf_cohort.join import JoinedSubjectGroup, KeyedMultiJoin
from hf_cohort.sources import BucketSource


def rows(*values):
    return {"v": list(values)}


def test_one_group_per_lead_key():
    lead = [(1, rows("a")), (3, rows("b", "c")), (5, rows("d"))]
    other = [(0, rows("x")), (3, rows("y")), (4, rows("z")), (5, rows("w", "w2"))]
    empty = []

    groups = list(KeyedMultiJoin([lead, other, empty]))

    assert [g.key for g in groups] == [1, 3, 5]
    assert [g.present for g in groups] == [[True, False, False], [True, True, False], [True, True, False]]
    assert groups[0].rows[1] is None
    assert groups[1].rows[0] == rows("b", "c")
    assert groups[1].rows[1] == rows("y")
    assert groups[2].rows[1] == rows("w", "w2")


def test_keys_only_in_other_sources_are_skipped():
    lead = [(10, rows("a"))]
    other = [(1, rows("x")), (2, rows("y")), (11, rows("z"))]

    (group,) = list(KeyedMultiJoin([lead, other]))

    assert group == JoinedSubjectGroup(key=10, rows=[rows("a"), None], present=[True, False])


def test_other_source_longer_than_lead():
    lead = [(1, rows("a")), (2, rows("b"))]
    other = [(2, rows("y")), (7, rows("z")), (9, rows("q"))]

    groups = list(KeyedMultiJoin([lead, other]))

    assert [g.present[1] for g in groups] == [False, True]


def test_empty_lead_source():
    assert list(KeyedMultiJoin([[], [(1, rows("x"))]])) == []


def test_reset_restarts_join():
    lead = [(1, rows("a")), (2, rows("b"))]
    other = [(2, rows("y"))]
    join = KeyedMultiJoin([lead, other])

    first = next(join)
    assert first.key == 1

    join.reset()
    assert [g.key for g in join] == [1, 2]

    join.reset()
    assert [g.key for g in join] == [1, 2]


def test_needs_a_source():
    with pytest.raises(ValueError):
        KeyedMultiJoin([])


def test_join_over_bucket_sources():
    spec = SourceSpec("events", "Svcdate", ("Svcdate",))
    with tempfile.TemporaryDirectory() as tmpdir:
        lead_path = Path(tmpdir) / "lead.parquet"
        other_path = Path(tmpdir) / "other.parquet"
        pl.DataFrame({"Enrolid": [1, 2, 2, 4], "Svcdate": [1, 2, 3, 4]}).write_parquet(lead_path)
        pl.DataFrame({"Enrolid": [2, 3, 4, 4], "Svcdate": [5, 6, 7, 8]}).write_parquet(other_path)

        join = KeyedMultiJoin([BucketSource(spec, [lead_path], chunk_size=3), BucketSource(spec, [other_path])])
        groups = list(join)

    assert [g.key for g in groups] == [1, 2, 4]
    assert [g.present for g in groups] == [[True, False], [True, True], [True, True]]
    assert groups[1].rows[0]["Svcdate"] == [2, 3]
    assert groups[2].rows[1]["Svcdate"] == [7, 8]
