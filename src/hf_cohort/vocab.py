"""
Diagnosis code dictionary and comorbidity category sets.

Both are built once at startup and only read afterwards, so they can be
pickled into every bucket worker.
"""

import bisect
import json
import os
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import jsonschema
import polars as pl

from hf_cohort.config import ConfigurationError

DX_CODES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": {"type": "integer", "minimum": 0},
}

VOCABULARY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": {"type": "array", "items": {"type": "string"}},
}


class CodeDictionary:
    """Map from diagnosis code strings to small integer ids"""

    def __init__(self, codes: Mapping[str, int]):
        self._codes: Dict[str, int] = dict(codes)

    def __len__(self) -> int:
        return len(self._codes)

    def __contains__(self, code: str) -> bool:
        return code in self._codes

    def get(self, code: str) -> Optional[int]:
        return self._codes.get(code)

    def convert(self, codes: Iterable[str]) -> List[int]:
        """Map codes to ids, dropping codes that are not in the dictionary"""
        return [self._codes[c] for c in codes if c in self._codes]

    def as_dict(self) -> Dict[str, int]:
        return dict(self._codes)

    @classmethod
    def from_file(cls, path: str) -> "CodeDictionary":
        """Load the dictionary from a JSON object or a two-column (code, id) csv/parquet table"""
        if not os.path.exists(path):
            raise ConfigurationError(f"Diagnosis code dictionary not found: {path}")

        try:
            if path.endswith(".json"):
                with open(path, "r") as f:
                    codes = json.load(f)
                jsonschema.validate(instance=codes, schema=DX_CODES_SCHEMA)
            elif path.endswith(".parquet") or path.endswith(".csv"):
                df = pl.read_parquet(path) if path.endswith(".parquet") else pl.read_csv(path)
                if "code" not in df.columns or "id" not in df.columns:
                    raise ConfigurationError(f"Code table {path} needs 'code' and 'id' columns, found {df.columns}")
                df = df.select(pl.col("code").cast(pl.Utf8), pl.col("id").cast(pl.Int64))
                codes = dict(zip(df["code"].to_list(), df["id"].to_list()))
            else:
                raise ConfigurationError(f"Unknown code dictionary format {path}, expected json, csv or parquet")
        except (OSError, json.JSONDecodeError, pl.exceptions.PolarsError) as e:
            raise ConfigurationError(f"Could not load diagnosis code dictionary {path}: {e}") from e
        except jsonschema.ValidationError as e:
            raise ConfigurationError(f"Invalid diagnosis code dictionary {path}: {e.message}") from e

        return cls(codes)


class ComorbidityCategory:
    """A named, sorted and duplicate-free set of diagnosis ids"""

    def __init__(self, name: str, ids: Iterable[int]):
        self.name = name
        self.ids: Tuple[int, ...] = tuple(sorted(set(ids)))

    def __contains__(self, dx_id: int) -> bool:
        j = bisect.bisect_left(self.ids, dx_id)
        return j != len(self.ids) and self.ids[j] == dx_id

    def __len__(self) -> int:
        return len(self.ids)

    def __repr__(self) -> str:
        return f"ComorbidityCategory({self.name!r}, {len(self.ids)} ids)"


class CategorySets:
    """Comorbidity categories in a fixed (sorted by name) order"""

    def __init__(self, categories: Iterable[ComorbidityCategory]):
        self.categories: Tuple[ComorbidityCategory, ...] = tuple(sorted(categories, key=lambda c: c.name))
        self._index = {c.name: i for i, c in enumerate(self.categories)}

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.categories]

    def __len__(self) -> int:
        return len(self.categories)

    def __iter__(self) -> Iterator[ComorbidityCategory]:
        return iter(self.categories)

    def __getitem__(self, name: str) -> ComorbidityCategory:
        return self.categories[self._index[name]]

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def index(self, name: str) -> int:
        return self._index[name]


def load_category_vocabulary(path: str) -> Dict[str, List[str]]:
    """Load one coding system's categories, a JSON object of category name -> list of code strings"""
    try:
        with open(path, "r") as f:
            vocabulary = json.load(f)
        jsonschema.validate(instance=vocabulary, schema=VOCABULARY_SCHEMA)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not load category vocabulary {path}: {e}") from e
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Invalid category vocabulary {path}: {e.message}") from e

    return vocabulary


def build_category_sets(vocabularies: Sequence[Mapping[str, Sequence[str]]], dictionary: CodeDictionary) -> CategorySets:
    """Merge the vocabularies of several coding systems into one set of categories

    A category may be missing from some vocabularies; its ids are then taken from
    the others. Codes unknown to the dictionary are dropped.
    """
    names = sorted(set().union(*(v.keys() for v in vocabularies)))

    categories = []
    for name in names:
        ids: List[int] = []
        for vocabulary in vocabularies:
            ids.extend(dictionary.convert(vocabulary.get(name, [])))
        categories.append(ComorbidityCategory(name, ids))

    return CategorySets(categories)
