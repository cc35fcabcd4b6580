from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .logger import get_logger


logger = get_logger("manifest")

RUN_COLUMN = 0
LIBRARY_COLUMN = 14
HEADER_SENTINEL = "Run"
EXPECTED_HEADERS = {RUN_COLUMN: "run", LIBRARY_COLUMN: "library name"}


class ManifestFormatError(ValueError):
    """Raised when the run table cannot be used at all."""


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    sample_key: str
    row_number: int
    fields: Mapping[str, str] = field(default_factory=dict, compare=False)


@dataclass
class ManifestData:
    path: Path
    records: List[RunRecord]
    samples: Dict[str, List[str]]
    skipped_rows: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def run_ids(self) -> List[str]:
        return [r.run_id for r in self.records]

    def expected_run_count(self, sample_key: str) -> int:
        return len(self.samples.get(sample_key, ()))

    def record(self, run_id: str) -> Optional[RunRecord]:
        for r in self.records:
            if r.run_id == run_id:
                return r
        return None

    def work_items(self) -> Iterator[Tuple[str, str]]:
        for r in self.records:
            yield r.run_id, r.sample_key


def _cell(row: List[str], index: int) -> str:
    if index < len(row):
        return row[index].strip()
    return ""


def _check_header(header: List[str], run_column: int, sample_column: int) -> None:
    expected = {run_column: EXPECTED_HEADERS[RUN_COLUMN], sample_column: EXPECTED_HEADERS[LIBRARY_COLUMN]}
    for index, name in expected.items():
        found = _cell(header, index).lower()
        if found != name:
            logger.warning(
                "Run table column %d is %r, expected %r; columns are read by position, "
                "check that the table layout has not changed",
                index,
                _cell(header, index),
                name,
            )


def load_manifest(
    manifest_path: Path,
    *,
    run_column: int = RUN_COLUMN,
    sample_column: int = LIBRARY_COLUMN,
    header_sentinel: str = HEADER_SENTINEL,
    allow_empty: bool = False,
) -> ManifestData:
    if not manifest_path.exists():
        raise FileNotFoundError(f"Manifest file not found: {manifest_path}")
    if run_column == sample_column:
        raise ManifestFormatError("Run and library columns must differ")

    header: List[str] = []
    records: List[RunRecord] = []
    samples: Dict[str, List[str]] = {}
    seen: Dict[str, int] = {}
    skipped: List[int] = []

    with manifest_path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f, delimiter="\t", quoting=csv.QUOTE_NONE)
        for row_number, row in enumerate(reader, start=1):
            if not row or not any(cell.strip() for cell in row):
                continue
            run_id = _cell(row, run_column)
            if run_id == header_sentinel:
                header = [cell.strip() for cell in row]
                _check_header(header, run_column, sample_column)
                continue

            sample_key = _cell(row, sample_column)
            if not run_id:
                logger.warning("Row %d has an empty run accession, skipping", row_number)
                skipped.append(row_number)
                continue
            if not sample_key:
                logger.warning("Empty library name for run %s (row %d), skipping", run_id, row_number)
                skipped.append(row_number)
                continue
            if run_id in seen:
                logger.warning(
                    "Run %s appears again on row %d (first on row %d), skipping duplicate",
                    run_id,
                    row_number,
                    seen[run_id],
                )
                skipped.append(row_number)
                continue

            names = [
                header[i] if i < len(header) and header[i] else f"col{i}"
                for i in range(len(row))
            ]
            record = RunRecord(
                run_id=run_id,
                sample_key=sample_key,
                row_number=row_number,
                fields=MappingProxyType({name: value for name, value in zip(names, row)}),
            )
            seen[run_id] = row_number
            records.append(record)
            samples.setdefault(sample_key, []).append(run_id)

    if not header:
        logger.warning("Run table %s has no %r header row", manifest_path, header_sentinel)
    if not records and not allow_empty:
        raise ManifestFormatError(f"Run table {manifest_path} has no usable rows")

    return ManifestData(path=manifest_path, records=records, samples=samples, skipped_rows=skipped)
