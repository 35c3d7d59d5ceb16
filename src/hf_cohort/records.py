"""
The cohort record log.

The log is a gzip-compressed JSON Lines file. The first line is a header
naming the comorbidity categories, in the order used to index each record's
`comorbidity` list. Every following line is one SubjectRecord.
"""

import gzip
import json
from dataclasses import asdict, dataclass
from typing import IO, Any, Dict, Iterator, List, Optional, Sequence, Tuple

import jsonschema

_INDEX_LIST = {"type": "array", "items": {"type": "integer", "minimum": 0}}

HEADER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["categories"],
    "properties": {"categories": {"type": "array", "items": {"type": "string"}}},
}

RECORD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": [
        "subject_id",
        "hf",
        "hf_date",
        "coverage_start",
        "coverage_end",
        "birth_year",
        "sex",
        "comorbidity",
        "drug_groups",
        "procedure_groups",
    ],
    "properties": {
        "subject_id": {"type": "integer"},
        "hf": {"type": "boolean"},
        "hf_date": {"type": ["integer", "null"]},
        "coverage_start": {"type": "integer"},
        "coverage_end": {"type": "integer"},
        "birth_year": {"type": ["integer", "null"]},
        "sex": {"type": ["integer", "null"]},
        "comorbidity": _INDEX_LIST,
        "drug_groups": _INDEX_LIST,
        "procedure_groups": _INDEX_LIST,
    },
}


@dataclass(frozen=True)
class SubjectRecord:
    """One retained subject.

    `hf_date` is only meaningful when `hf` is true. The three index lists are
    sorted and distinct: `comorbidity` holds category indices, `drug_groups`
    holds therapeutic group - 1 and `procedure_groups` procedure group - 1.
    """

    subject_id: int
    hf: bool
    hf_date: Optional[int]
    coverage_start: int
    coverage_end: int
    birth_year: Optional[int]
    sex: Optional[int]
    comorbidity: Tuple[int, ...]
    drug_groups: Tuple[int, ...]
    procedure_groups: Tuple[int, ...]

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for k in ("comorbidity", "drug_groups", "procedure_groups"):
            d[k] = list(d[k])
        if not self.hf:
            d["hf_date"] = None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SubjectRecord":
        return cls(
            subject_id=d["subject_id"],
            hf=d["hf"],
            hf_date=d["hf_date"],
            coverage_start=d["coverage_start"],
            coverage_end=d["coverage_end"],
            birth_year=d["birth_year"],
            sex=d["sex"],
            comorbidity=tuple(d["comorbidity"]),
            drug_groups=tuple(d["drug_groups"]),
            procedure_groups=tuple(d["procedure_groups"]),
        )


class RecordWriter:
    """Single writer for the record log; the header must come first and only once."""

    def __init__(self, fileobj: IO[str]):
        self._f = fileobj
        self._header_written = False
        self.count = 0

    def write_header(self, categories: Sequence[str]) -> None:
        if self._header_written:
            raise RuntimeError("Record log header was already written")
        self._f.write(json.dumps({"categories": list(categories)}) + "\n")
        self._header_written = True

    def write(self, record: SubjectRecord) -> None:
        if not self._header_written:
            raise RuntimeError("Record log header must be written before any record")
        self._f.write(json.dumps(record.to_dict()) + "\n")
        self.count += 1


def open_record_log(path: str, mode: str = "rt") -> IO[str]:
    return gzip.open(path, mode, encoding="utf-8")


class RecordLogReader:
    """Read a record log: `categories` from the header, then records until exhaustion.

    Usage:
        with RecordLogReader(path) as reader:
            for record in reader:
                ...
    """

    def __init__(self, path: str, validate: bool = False):
        self.path = path
        self.validate = validate
        self.categories: List[str] = []
        self._f: Optional[IO[str]] = None

    def __enter__(self) -> "RecordLogReader":
        self._f = open_record_log(self.path)
        first = self._f.readline()
        if not first:
            self.close()
            raise ValueError(f"Record log {self.path} is empty, expected a header line")
        header = json.loads(first)
        jsonschema.validate(instance=header, schema=HEADER_SCHEMA)
        self.categories = header["categories"]
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None

    def __iter__(self) -> Iterator[SubjectRecord]:
        if self._f is None:
            raise RuntimeError("RecordLogReader must be used as a context manager")
        for line in self._f:
            if not line.strip():
                continue
            d = json.loads(line)
            if self.validate:
                jsonschema.validate(instance=d, schema=RECORD_SCHEMA)
            yield SubjectRecord.from_dict(d)
