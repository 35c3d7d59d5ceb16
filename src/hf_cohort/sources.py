"""
Chunked readers over one bucket of one source table.

A bucket of a source is either a single file `<root>/0007.parquet` or a
directory `<root>/0007/` of parquet part files. Rows must be sorted by the
subject key across all part files.
"""

import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import polars as pl
import pyarrow as pa
import pyarrow.parquet as pq

from hf_cohort.config import CHUNK_SIZE, EPOCH_YEAR, KEY_COLUMN, SourceSpec

# Column name -> values for the rows of one subject
SubjectRows = Dict[str, List[Any]]


class MalformedSourceError(RuntimeError):
    """A bucket shard is missing, lacks a projected column or is not sorted by subject key."""

    def __init__(self, message: str, bucket: Optional[int] = None, source: Optional[str] = None):
        super().__init__(message)
        self.bucket = bucket
        self.source = source

    def __reduce__(self):
        return (type(self), (self.args[0], self.bucket, self.source))


def find_bucket_files(root: Path, bucket: int) -> List[Path]:
    """Find the parquet files holding one bucket of a source table."""
    root = Path(root)
    bucket_dir = root / f"{bucket:04d}"

    if bucket_dir.is_dir():
        return sorted(bucket_dir.glob("*.parquet"))
    elif (root / f"{bucket:04d}.parquet").exists():
        return [root / f"{bucket:04d}.parquet"]
    else:
        return []


class BucketSource:
    """Reads one bucket of one source table chunk by chunk, grouped by subject key.

    Iterating yields `(key, rows)` pairs, one per distinct key in ascending
    order, where `rows` maps each projected column to the values of that
    subject's rows. A subject whose rows straddle a chunk boundary is still
    yielded once. Every iteration starts again from the first file.

    Chunks are normalised as they are loaded:
      * string or dictionary-encoded diagnosis columns are mapped to integer
        ids with `dx_codes` (codes missing from the dictionary become None),
        integer ones are taken as ids already,
      * Date/Datetime columns become day offsets from 1 January of `epoch_year`.
    """

    def __init__(
        self,
        spec: SourceSpec,
        files: Sequence[Path],
        bucket: Optional[int] = None,
        dx_codes: Optional[Mapping[str, int]] = None,
        chunk_size: int = CHUNK_SIZE,
        epoch_year: int = EPOCH_YEAR,
    ):
        self.spec = spec
        self.files = [Path(f) for f in files]
        self.bucket = bucket
        self.dx_codes = dx_codes
        self.chunk_size = chunk_size
        self.epoch = datetime.date(epoch_year, 1, 1)

        if not self.files:
            raise self._error("no files found")

        for fname in self.files:
            try:
                names = pq.ParquetFile(fname).schema_arrow.names
            except (OSError, pa.ArrowException) as e:
                raise self._error(f"could not open {fname}: {e}") from e
            missing = [c for c in spec.projection if c not in names]
            if missing:
                raise self._error(f"{fname} is missing columns {missing}")

    @property
    def name(self) -> str:
        return self.spec.name

    def _error(self, message: str) -> MalformedSourceError:
        return MalformedSourceError(
            f"bucket {self.bucket}, source '{self.spec.name}': {message}", bucket=self.bucket, source=self.spec.name
        )

    def _normalize(self, df: pl.DataFrame) -> pl.DataFrame:
        dx_columns = set(self.spec.dx_columns)
        exprs = []
        for name, dtype in df.schema.items():
            if name in dx_columns:
                if dtype == pl.Utf8 or isinstance(dtype, (pl.Categorical, pl.Enum)):
                    if self.dx_codes:
                        exprs.append(
                            pl.col(name)
                            .cast(pl.Utf8)
                            .replace_strict(self.dx_codes, default=None, return_dtype=pl.Int64)
                        )
                    else:
                        exprs.append(pl.lit(None, dtype=pl.Int64).alias(name))
                elif dtype == pl.Null:
                    exprs.append(pl.col(name).cast(pl.Int64))
                elif not dtype.is_integer():
                    raise self._error(f"diagnosis column {name} has unsupported type {dtype}")
            elif dtype == pl.Date or isinstance(dtype, pl.Datetime):
                exprs.append((pl.col(name).cast(pl.Date) - pl.lit(self.epoch)).dt.total_days().alias(name))
        return df.with_columns(exprs) if exprs else df

    def chunks(self) -> Iterator[Dict[str, List[Any]]]:
        """Yield column dicts of at most `chunk_size` rows, checking the key order."""
        last_key = None
        for fname in self.files:
            try:
                batches = pq.ParquetFile(fname).iter_batches(batch_size=self.chunk_size, columns=list(self.spec.projection))
                for batch in batches:
                    df = pl.from_arrow(batch)
                    if len(df) == 0:
                        continue

                    keys = df[KEY_COLUMN]
                    if keys.null_count() > 0:
                        raise self._error(f"{fname} has null {KEY_COLUMN} values")
                    if not keys.is_sorted():
                        raise self._error(f"{fname} is not sorted by {KEY_COLUMN}")
                    if last_key is not None and keys[0] < last_key:
                        raise self._error(f"{fname} is not sorted by {KEY_COLUMN} across chunks")
                    last_key = keys[-1]

                    yield self._normalize(df).to_dict(as_series=False)
            except (OSError, pa.ArrowException, pl.exceptions.PolarsError) as e:
                raise self._error(f"failed reading {fname}: {e}") from e

    def __iter__(self) -> Iterator[Tuple[int, SubjectRows]]:
        pending_key, pending = None, None

        for chunk in self.chunks():
            keys = chunk[KEY_COLUMN]
            n = len(keys)
            start = 0
            for i in range(1, n + 1):
                if i < n and keys[i] == keys[start]:
                    continue

                key = keys[start]
                rows = {c: v[start:i] for c, v in chunk.items()}
                start = i

                if pending is not None and key == pending_key:
                    # Same subject continued from the previous chunk
                    for c, v in rows.items():
                        pending[c].extend(v)
                    continue

                if pending is not None:
                    yield pending_key, pending
                pending_key, pending = key, rows

        if pending is not None:
            yield pending_key, pending


def open_bucket_sources(
    specs: Sequence[SourceSpec],
    roots: Mapping[str, str],
    bucket: int,
    dx_codes: Optional[Mapping[str, int]] = None,
    chunk_size: int = CHUNK_SIZE,
    epoch_year: int = EPOCH_YEAR,
) -> List[BucketSource]:
    """Open one BucketSource per source kind for the given bucket, in join order."""
    return [
        BucketSource(
            spec,
            find_bucket_files(Path(roots[spec.name]), bucket),
            bucket=bucket,
            dx_codes=dx_codes,
            chunk_size=chunk_size,
            epoch_year=epoch_year,
        )
        for spec in specs
    ]
