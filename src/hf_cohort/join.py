"""
Lock-step join of the per-bucket sources on the subject key.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from hf_cohort.sources import BucketSource, SubjectRows


@dataclass
class JoinedSubjectGroup:
    """The rows of every source for one subject.

    `rows[j]` is None and `present[j]` is False when source j has no rows
    for this subject.
    """

    key: int
    rows: List[Optional[SubjectRows]]
    present: List[bool]


class _Cursor:
    def __init__(self, source: BucketSource):
        self._groups: Iterator[Tuple[int, SubjectRows]] = iter(source)
        self.key: Optional[int] = None
        self.rows: Optional[SubjectRows] = None
        self.advance()

    def advance(self) -> None:
        self.key, self.rows = next(self._groups, (None, None))

    @property
    def exhausted(self) -> bool:
        return self.rows is None


class KeyedMultiJoin:
    """Walk several key-sorted sources together, one subject at a time.

    The first source drives the join: one JoinedSubjectGroup is produced for
    every distinct key it contains. The other sources skip keys that the
    first source does not have, and contribute their rows when their current
    key matches. Sources must already be sorted by key.

    Iteration is lazy. `reset()` rewinds every source so the join can be run
    again from the start.
    """

    def __init__(self, sources: Sequence[BucketSource]):
        if not sources:
            raise ValueError("KeyedMultiJoin needs at least one source")
        self.sources = list(sources)
        self._cursors: Optional[List[_Cursor]] = None

    def reset(self) -> None:
        self._cursors = None

    def __iter__(self) -> "KeyedMultiJoin":
        return self

    def __next__(self) -> JoinedSubjectGroup:
        if self._cursors is None:
            self._cursors = [_Cursor(s) for s in self.sources]

        lead = self._cursors[0]
        if lead.exhausted:
            raise StopIteration

        key = lead.key
        rows: List[Optional[SubjectRows]] = [lead.rows]
        present = [True]
        lead.advance()

        for cursor in self._cursors[1:]:
            while not cursor.exhausted and cursor.key < key:
                cursor.advance()

            if not cursor.exhausted and cursor.key == key:
                rows.append(cursor.rows)
                present.append(True)
                cursor.advance()
            else:
                rows.append(None)
                present.append(False)

        return JoinedSubjectGroup(key=key, rows=rows, present=present)
