"""
Configuration for the heart-failure cohort ETL.

The configuration is a single JSON file naming the bucketed source tables,
the diagnosis code dictionary and the comorbidity vocabularies, plus a few
study constants.  Example:

    {
        "num_buckets": 100,
        "sources": {
            "enrollment": "/data/A",
            "outpatient": "/data/O",
            "inpatient_services": "/data/S",
            "inpatient_admissions": "/data/I",
            "facility": "/data/F",
            "drug": "/data/D"
        },
        "dx_codes": "dx_codes.json",
        "vocabularies": ["elix9.json", "elix10.json"],
        "concurrency": 100
    }

Relative paths are resolved against the directory holding the config file.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

import jsonschema

# ============================================================================
# STUDY CONSTANTS
# ============================================================================

# Read raw data in chunks of this many rows
CHUNK_SIZE: int = 100_000

# A year counts as covered only with at least this many days of coverage
MIN_COVERAGE: int = 360

# Outcomes before window start + BASELINE_DAYS are excluded, and indicators
# are collected over [window start, window start + BASELINE_DAYS]
BASELINE_DAYS: int = 365

# Keep one in SAMPLE_RATE non-cases
SAMPLE_RATE: int = 10

# Number of buckets processed in parallel
CONCURRENCY: int = 100

# Bound on records waiting for the harvester
QUEUE_SIZE: int = 200

OUTCOME_CATEGORY: str = "CHF"

# Day offsets are counted from 1 January of this year
EPOCH_YEAR: int = 1960

# Therapeutic groups are 1..NUM_DRUG_GROUPS, procedure groups 1..NUM_PROCEDURE_GROUPS
NUM_DRUG_GROUPS: int = 31
NUM_PROCEDURE_GROUPS: int = 500

KEY_COLUMN: str = "Enrolid"


class ConfigurationError(ValueError):
    """The configuration, code dictionary or a vocabulary could not be loaded."""


# ============================================================================
# SOURCE TABLES
# ============================================================================


@dataclass(frozen=True)
class SourceSpec:
    """Projection of one source table kind."""

    name: str
    date_column: str
    columns: Tuple[str, ...]
    drug_group_column: str = ""
    procedure_group_column: str = ""

    @property
    def dx_columns(self) -> Tuple[str, ...]:
        return tuple(c for c in self.columns if c.startswith("Dx"))

    @property
    def projection(self) -> Tuple[str, ...]:
        return (KEY_COLUMN,) + self.columns


def _dx(n: int) -> Tuple[str, ...]:
    return tuple(f"Dx{i}" for i in range(1, n + 1))


# Join order matters: the enrollment table drives the join and must come first
SOURCE_SPECS: Tuple[SourceSpec, ...] = (
    SourceSpec("enrollment", "Year", ("Year", "Memdays", "Dobyr", "Region", "Emprel", "Sex")),
    SourceSpec("outpatient", "Svcdate", ("Svcdate",) + _dx(4) + ("Procgrp",), procedure_group_column="Procgrp"),
    SourceSpec("inpatient_services", "Svcdate", ("Svcdate",) + _dx(2)),
    SourceSpec("inpatient_admissions", "Admdate", ("Admdate",) + _dx(15)),
    SourceSpec("facility", "Svcdate", ("Svcdate",) + _dx(9)),
    SourceSpec("drug", "Svcdate", ("Svcdate", "Thergrp"), drug_group_column="Thergrp"),
)

SOURCE_NAMES: Tuple[str, ...] = tuple(s.name for s in SOURCE_SPECS)


# ============================================================================
# CONFIG FILE
# ============================================================================

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["num_buckets", "sources", "dx_codes", "vocabularies"],
    "properties": {
        "num_buckets": {"type": "integer", "minimum": 1},
        "sources": {
            "type": "object",
            "required": list(SOURCE_NAMES),
            "properties": {name: {"type": "string"} for name in SOURCE_NAMES},
            "additionalProperties": False,
        },
        "dx_codes": {"type": "string"},
        "vocabularies": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "concurrency": {"type": "integer", "minimum": 1},
        "queue_size": {"type": "integer", "minimum": 1},
        "chunk_size": {"type": "integer", "minimum": 1},
        "min_coverage": {"type": "integer", "minimum": 0},
        "baseline_days": {"type": "integer", "minimum": 0},
        "sample_rate": {"type": "integer", "minimum": 1},
        "outcome_category": {"type": "string"},
        "epoch_year": {"type": "integer"},
    },
    "additionalProperties": False,
}


@dataclass(frozen=True)
class CohortConfig:
    num_buckets: int
    sources: Dict[str, str]
    dx_codes: str
    vocabularies: Tuple[str, ...]
    concurrency: int = CONCURRENCY
    queue_size: int = QUEUE_SIZE
    chunk_size: int = CHUNK_SIZE
    min_coverage: int = MIN_COVERAGE
    baseline_days: int = BASELINE_DAYS
    sample_rate: int = SAMPLE_RATE
    outcome_category: str = OUTCOME_CATEGORY
    epoch_year: int = EPOCH_YEAR
    source_specs: Tuple[SourceSpec, ...] = field(default=SOURCE_SPECS, repr=False)


def _resolve(base_dir: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.normpath(os.path.join(base_dir, path))


def load_config(config_path: str) -> CohortConfig:
    """Load and validate the ETL configuration

    Args:
        config_path: Path to the configuration JSON file

    Returns:
        CohortConfig with every path made absolute
    """
    if not config_path or not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file required but not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read configuration {config_path}: {e}") from e

    try:
        jsonschema.validate(instance=config, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Invalid configuration {config_path}: {e.message}") from e

    base_dir = os.path.dirname(os.path.abspath(config_path))
    config["sources"] = {name: _resolve(base_dir, path) for name, path in config["sources"].items()}
    config["dx_codes"] = _resolve(base_dir, config["dx_codes"])
    config["vocabularies"] = tuple(_resolve(base_dir, p) for p in config["vocabularies"])

    for name, root in config["sources"].items():
        if not os.path.isdir(root):
            raise ConfigurationError(f"Source directory for '{name}' does not exist: {root}")

    return CohortConfig(**config)
