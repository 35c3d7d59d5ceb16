"""
Per-subject cohort logic: eligibility window, indicator scan and
sub-sampling of non-cases.
"""

import hashlib
from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional, Sequence

from hf_cohort.config import (
    BASELINE_DAYS,
    EPOCH_YEAR,
    MIN_COVERAGE,
    NUM_DRUG_GROUPS,
    NUM_PROCEDURE_GROUPS,
    SAMPLE_RATE,
    SOURCE_SPECS,
    SourceSpec,
)
from hf_cohort.join import JoinedSubjectGroup
from hf_cohort.vocab import CategorySets, ComorbidityCategory

# ============================================================================
# ELIGIBILITY WINDOW
# ============================================================================


class SubjectWindow(NamedTuple):
    """Consecutive covered years `first_year` .. `last_year - 1`."""

    first_year: int
    last_year: int

    @property
    def num_years(self) -> int:
        return self.last_year - self.first_year


def epoch_days(year: int, epoch_year: int = EPOCH_YEAR) -> int:
    """Approximate day offset of 1 January of `year` from 1 January of `epoch_year`"""
    return int(365.25 * (year - epoch_year))


def eligibility_window(
    years: Sequence[int], days_covered: Sequence[Optional[int]], min_coverage: int = MIN_COVERAGE
) -> Optional[SubjectWindow]:
    """Find the longest run of consecutive years with at least `min_coverage` days of coverage.

    The input rows need not be sorted or contiguous. Ties between runs of equal
    length go to the earliest run.

    Returns:
        SubjectWindow with an exclusive `last_year`, or None when no year is
        covered or the longest run is a single year.
    """
    covered = {int(y) for y, d in zip(years, days_covered) if y is not None and d is not None and d >= min_coverage}

    best: Optional[SubjectWindow] = None
    for year in sorted(covered):
        if year - 1 in covered:
            # Not the start of a run
            continue
        end = year + 1
        while end in covered:
            end += 1
        if best is None or end - year > best.num_years:
            best = SubjectWindow(year, end)

    if best is None or best.num_years < 2:
        return None
    return best


# ============================================================================
# INDICATOR SCAN
# ============================================================================


def compact(flags: Iterable[bool]) -> List[int]:
    """Indices of the true entries, e.g. [True, False, True] -> [0, 2]"""
    return [i for i, v in enumerate(flags) if v]


@dataclass(frozen=True)
class ScanResult:
    hf: bool
    hf_date: Optional[int]
    comorbidity: List[int]
    drug_groups: List[int]
    procedure_groups: List[int]


class SubjectScanner:
    """Derive the outcome and baseline indicators for one subject.

    Every diagnosis on every non-enrollment source is checked against the
    outcome category over the subject's whole history, keeping the earliest
    date. Diagnoses, drug therapeutic groups and procedure groups dated within
    `baseline_days` of the window start set the subject's indicators.
    """

    def __init__(
        self,
        categories: CategorySets,
        outcome: ComorbidityCategory,
        specs: Sequence[SourceSpec] = SOURCE_SPECS,
        baseline_days: int = BASELINE_DAYS,
    ):
        self.categories = categories
        self.outcome = outcome
        self.specs = list(specs)
        self.baseline_days = baseline_days

    def scan(self, group: JoinedSubjectGroup, window_start: int) -> ScanResult:
        window_end = window_start + self.baseline_days

        hf_date: Optional[int] = None
        elx = [False] * len(self.categories)
        thg = [False] * NUM_DRUG_GROUPS
        pcx = [False] * NUM_PROCEDURE_GROUPS

        # The enrollment source (index 0) carries no events
        for j in range(1, len(self.specs)):
            if not group.present[j]:
                continue

            spec = self.specs[j]
            rows = group.rows[j]
            dates = rows[spec.date_column]
            in_window = [d is not None and window_start <= d <= window_end for d in dates]

            if spec.drug_group_column:
                for i, t in enumerate(rows[spec.drug_group_column]):
                    if in_window[i] and t is not None and 0 < t <= NUM_DRUG_GROUPS:
                        thg[t - 1] = True

            if spec.procedure_group_column:
                for i, p in enumerate(rows[spec.procedure_group_column]):
                    if in_window[i] and p is not None and 0 < p <= NUM_PROCEDURE_GROUPS:
                        pcx[p - 1] = True

            for column in spec.dx_columns:
                for i, dx in enumerate(rows[column]):
                    if dx is None:
                        continue

                    if dates[i] is not None and dx in self.outcome:
                        if hf_date is None or dates[i] < hf_date:
                            hf_date = dates[i]

                    if in_window[i]:
                        for q, category in enumerate(self.categories):
                            if not elx[q] and dx in category:
                                elx[q] = True

        return ScanResult(
            hf=hf_date is not None,
            hf_date=hf_date,
            comorbidity=compact(elx),
            drug_groups=compact(thg),
            procedure_groups=compact(pcx),
        )


# ============================================================================
# SUB-SAMPLING
# ============================================================================


def subject_hash(subject_id: int) -> int:
    """Stable hash of a subject key, independent of process and run"""
    return int(hashlib.md5(str(subject_id).encode()).hexdigest(), 16)


def retain_subject(subject_id: int, hf: bool, sample_rate: int = SAMPLE_RATE) -> bool:
    """Keep every case and one in `sample_rate` non-cases, chosen by key."""
    if hf:
        return True
    return subject_hash(subject_id) % sample_rate == 0
