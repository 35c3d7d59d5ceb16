"""
Heart-failure cohort ETL

Reads bucketed, subject-sorted claims tables and writes one record per
eligible subject: every subject with heart failure after the first covered
year, plus a deterministic one-in-ten sample of subjects without it.

Pipeline:
- Stage 0: load the diagnosis code dictionary and comorbidity vocabularies
           into an immutable CohortContext (fails before any work starts)
- Stage 1: write the record log header
- Stage 2: process buckets in a bounded process pool; each bucket joins its
           six sources by subject and pushes accepted records to a bounded
           queue that a single harvester drains into the log

Usage:
    hf_cohort config.json hfdat.jsonl.gz --num_proc 100
"""

import argparse
import os
import pickle
import time
from collections import Counter
from dataclasses import dataclass, replace
from multiprocessing import get_context
from queue import Empty
from typing import Any, Callable, Dict, List, Optional, Sequence

import polars as pl
import pyarrow as pa
from tqdm import tqdm

from hf_cohort.cohort import SubjectScanner, eligibility_window, epoch_days, retain_subject
from hf_cohort.config import CohortConfig, ConfigurationError, load_config
from hf_cohort.join import KeyedMultiJoin
from hf_cohort.records import RecordWriter, SubjectRecord, open_record_log
from hf_cohort.sources import MalformedSourceError, open_bucket_sources
from hf_cohort.vocab import (
    CategorySets,
    CodeDictionary,
    ComorbidityCategory,
    build_category_sets,
    load_category_vocabulary,
)

STAT_KEYS = ("subjects", "ineligible", "incident_excluded", "sampled_out", "cases", "controls", "emitted")

# Seconds the harvester waits on an empty queue before checking the workers
CHECK_INTERVAL = 0.5


class WorkerError(RuntimeError):
    """A bucket worker process exited without reporting a result."""


# ============================================================================
# CONTEXT
# ============================================================================


@dataclass(frozen=True)
class CohortContext:
    """Everything a bucket worker reads; built once, never modified."""

    config: CohortConfig
    dictionary: CodeDictionary
    categories: CategorySets
    outcome: ComorbidityCategory


def build_context(config: CohortConfig) -> CohortContext:
    dictionary = CodeDictionary.from_file(config.dx_codes)
    if len(dictionary) == 0:
        raise ConfigurationError(f"Diagnosis code dictionary is empty: {config.dx_codes}")

    vocabularies = [load_category_vocabulary(path) for path in config.vocabularies]
    categories = build_category_sets(vocabularies, dictionary)

    if config.outcome_category not in categories:
        raise ConfigurationError(
            f"Outcome category '{config.outcome_category}' not found in vocabularies, "
            f"available categories: {categories.names}"
        )

    return CohortContext(
        config=config,
        dictionary=dictionary,
        categories=categories,
        outcome=categories[config.outcome_category],
    )


# ============================================================================
# BUCKET WORKER
# ============================================================================


def process_bucket(
    context: CohortContext, bucket: int, emit: Callable[[SubjectRecord], None], verbose: int = 0
) -> Dict[str, int]:
    """Join, window, scan and sample every subject of one bucket.

    Accepted records are passed to `emit`, in enrollment key order.

    Returns:
        Counters for this bucket (see STAT_KEYS)
    """
    config = context.config
    specs = config.source_specs
    enrollment = specs[0]

    sources = open_bucket_sources(
        specs,
        config.sources,
        bucket,
        dx_codes=context.dictionary.as_dict(),
        chunk_size=config.chunk_size,
        epoch_year=config.epoch_year,
    )
    scanner = SubjectScanner(context.categories, context.outcome, specs=specs, baseline_days=config.baseline_days)

    stats = Counter({k: 0 for k in STAT_KEYS})

    for js, group in enumerate(KeyedMultiJoin(sources)):
        if verbose and js % 100_000 == 0:
            print(f"Bucket {bucket}: {js:,} subjects")
        stats["subjects"] += 1

        rows = group.rows[0]
        window = eligibility_window(rows[enrollment.date_column], rows["Memdays"], config.min_coverage)
        if window is None:
            stats["ineligible"] += 1
            continue

        # First/last day of the coverage window
        d0 = epoch_days(window.first_year, config.epoch_year)
        d1 = epoch_days(window.last_year, config.epoch_year)

        scan = scanner.scan(group, d0)

        # Heart failure before the end of the first covered year
        if scan.hf and scan.hf_date < d0 + config.baseline_days:
            stats["incident_excluded"] += 1
            continue

        if not retain_subject(group.key, scan.hf, config.sample_rate):
            stats["sampled_out"] += 1
            continue

        emit(
            SubjectRecord(
                subject_id=int(group.key),
                hf=scan.hf,
                hf_date=scan.hf_date,
                coverage_start=d0,
                coverage_end=d1,
                birth_year=rows["Dobyr"][0],
                sex=rows["Sex"][0],
                comorbidity=tuple(scan.comorbidity),
                drug_groups=tuple(scan.drug_groups),
                procedure_groups=tuple(scan.procedure_groups),
            )
        )
        stats["cases" if scan.hf else "controls"] += 1
        stats["emitted"] += 1

    return dict(stats)


def run_bucket(context: CohortContext, bucket: int, emit: Callable[[SubjectRecord], None], verbose: int = 0):
    """process_bucket, with read failures reported as MalformedSourceError for the bucket"""
    try:
        return process_bucket(context, bucket, emit, verbose)
    except MalformedSourceError:
        raise
    except (OSError, pa.ArrowException, pl.exceptions.PolarsError) as e:
        raise MalformedSourceError(f"bucket {bucket}: {type(e).__name__}: {e}", bucket=bucket) from e


def bucket_worker(args) -> Dict[str, int]:
    """
    This function is designed to be called through `pool.apply_async`

    Args:
        args (tuple): (bucket, context_data, queue, verbose) where `context_data`
            is the pickled CohortContext and `queue` the shared bounded output queue
    """
    bucket, context_data, queue, verbose = args
    context = pickle.loads(context_data)
    if verbose:
        print(f"Starting bucket {bucket}")
    stats = run_bucket(context, bucket, queue.put, verbose)
    stats["bucket"] = bucket
    return stats


# ============================================================================
# SCHEDULER / HARVESTER
# ============================================================================


def harvest(
    queue, writer: RecordWriter, check: Optional[Callable[[], None]] = None, check_interval: float = CHECK_INTERVAL
) -> int:
    """Drain the queue into the writer until the `None` sentinel arrives.

    `check` is called whenever the queue stays empty for `check_interval`
    seconds; it stops the harvest by raising.
    """
    n = 0
    while True:
        try:
            record = queue.get(timeout=check_interval)
        except Empty:
            if check is not None:
                check()
            continue

        if record is None:
            return n
        writer.write(record)
        n += 1


def worker_monitor(pool) -> Callable[[], None]:
    """Return a check that raises WorkerError once any worker of `pool` has exited.

    Pool workers only exit when the pool is closed, so an exit code seen
    while buckets are still pending means a worker died and its bucket was
    lost. The pool replaces dead workers, so every worker seen is remembered.
    """
    workers = {}

    def check():
        for process in pool._pool:
            workers.setdefault(process.pid, process)
        dead = {pid: p.exitcode for pid, p in workers.items() if p.exitcode is not None}
        if dead:
            raise WorkerError(f"Worker processes died while buckets were pending (pid: exit code) {dead}")

    check()
    return check


def run_buckets_parallel(
    context: CohortContext, buckets: Sequence[int], writer: RecordWriter, num_proc: int, verbose: int = 0
) -> List[Dict[str, int]]:
    """Run one worker per bucket, at most `num_proc` at a time, harvesting in this process.

    The first worker failure stops the harvest and is re-raised here; the
    pool is terminated with the remaining workers. A worker process that dies
    without reporting (killed, crashed) raises WorkerError.
    """
    if not buckets:
        return []

    results: List[Dict[str, int]] = []
    errors: List[BaseException] = []
    context_data = pickle.dumps(context)

    os.environ["POLARS_MAX_THREADS"] = "1"
    ctx = get_context("spawn")

    with ctx.Manager() as manager:
        queue = manager.Queue(maxsize=context.config.queue_size)

        with ctx.Pool(num_proc) as pool, tqdm(total=len(buckets), desc="Processing buckets") as pbar:
            check_workers = worker_monitor(pool)

            # Callbacks run one at a time on the pool's result thread
            def on_done(stats):
                results.append(stats)
                pbar.update()
                if len(results) == len(buckets):
                    queue.put(None)

            def on_error(exc):
                if not errors:
                    queue.put(None)
                errors.append(exc)

            for bucket in buckets:
                pool.apply_async(
                    bucket_worker,
                    ((bucket, context_data, queue, verbose),),
                    callback=on_done,
                    error_callback=on_error,
                )

            harvest(queue, writer, check=check_workers)

            if errors:
                pool.terminate()
                raise errors[0]

    return results


def run_buckets_sequential(
    context: CohortContext, buckets: Sequence[int], writer: RecordWriter, verbose: int = 0
) -> List[Dict[str, int]]:
    # Useful for debugging without multiprocessing
    results = []
    for bucket in tqdm(buckets, desc="Processing buckets"):
        stats = run_bucket(context, bucket, writer.write, verbose)
        stats["bucket"] = bucket
        results.append(stats)
    return results


def summarize(results: Sequence[Dict[str, int]]) -> Dict[str, int]:
    totals = Counter({k: 0 for k in STAT_KEYS})
    for stats in results:
        totals.update({k: stats.get(k, 0) for k in STAT_KEYS})
    return dict(totals)


def check_written(totals: Dict[str, int], written: int):
    if totals["emitted"] != written:
        raise RuntimeError(f"Workers emitted {totals['emitted']:,} records but {written:,} were written")


def run_pipeline(
    config: CohortConfig,
    output_path: str,
    num_proc: Optional[int] = None,
    buckets: Optional[Sequence[int]] = None,
    verbose: int = 0,
) -> Dict[str, Any]:
    """Run the cohort ETL and write the record log to `output_path`.

    The log is written to `output_path + ".tmp"` and moved into place only when
    every bucket has finished; on failure the temporary file is removed.

    Returns:
        Run-level counters summed over buckets, plus `buckets` and `elapsed`
    """
    pipeline_start = time.time()
    num_proc = num_proc or config.concurrency
    if buckets is None:
        buckets = list(range(config.num_buckets))

    print("\n=== STAGE 0: LOADING VOCABULARIES ===")
    context = build_context(config)
    print(f"  Diagnosis codes: {len(context.dictionary):,}")
    print(f"  Comorbidity categories: {len(context.categories)}")
    print(f"  Outcome category: {context.outcome.name} ({len(context.outcome):,} codes)")

    print(f"\n=== STAGE 1: PROCESSING {len(buckets)} BUCKETS ({num_proc} at a time) ===")
    tmp_path = output_path + ".tmp"
    try:
        with open_record_log(tmp_path, "wt") as f:
            writer = RecordWriter(f)
            writer.write_header(context.categories.names)

            if num_proc > 1:
                results = run_buckets_parallel(context, buckets, writer, num_proc, verbose)
            else:
                results = run_buckets_sequential(context, buckets, writer, verbose)

            written = writer.count

        totals: Dict[str, Any] = summarize(results)
        check_written(totals, written)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    os.replace(tmp_path, output_path)

    totals["buckets"] = len(results)
    totals["elapsed"] = time.time() - pipeline_start

    print("\n✅ Cohort complete:")
    print(f"   Subjects seen: {totals['subjects']:,}")
    print(f"   Without an eligible window: {totals['ineligible']:,}")
    print(f"   Excluded for heart failure in the first year: {totals['incident_excluded']:,}")
    print(f"   Non-cases not sampled: {totals['sampled_out']:,}")
    print(f"   Records written: {written:,} ({totals['cases']:,} cases, {totals['controls']:,} controls)")
    print(f"   Time: {totals['elapsed']:.2f}s")
    print(f"   Output: {output_path}")

    return totals


def main():
    parser = argparse.ArgumentParser(
        prog="hf_cohort", description="Derive the heart-failure cohort record log from bucketed claims tables"
    )
    parser.add_argument("config", type=str, help="Path to the cohort configuration JSON file")
    parser.add_argument("output", type=str, help="Path of the record log to write, e.g. hfdat.jsonl.gz")
    parser.add_argument(
        "--num_proc",
        type=int,
        default=None,
        help="Number of buckets to process in parallel (default: `concurrency` from the config)",
    )
    parser.add_argument("--queue_size", type=int, default=None, help="Bound on records waiting to be written")
    parser.add_argument("--verbose", type=int, default=0)
    parser.add_argument(
        "--force_refresh",
        action="store_true",
        help="If set, an existing output file is overwritten.",
    )
    args = parser.parse_args()

    if os.path.exists(args.output) and not args.force_refresh:
        raise ValueError(f'The output "{args.output}" already exists, use --force_refresh to overwrite it')

    config = load_config(args.config)
    if args.queue_size is not None:
        config = replace(config, queue_size=args.queue_size)

    run_pipeline(config, args.output, num_proc=args.num_proc, verbose=args.verbose)


if __name__ == "__main__":
    main()
