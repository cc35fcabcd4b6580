from __future__ import annotations

import gzip
from pathlib import Path

import pytest

from sra10x.fastq import FastqRepairError, check_and_repair, gzip_is_intact, repair_fastq, validate_fastq

from conftest import write_fastq


def _read(path: Path) -> str:
    with gzip.open(path, "rt", encoding="utf-8") as handle:
        return handle.read()


def test_well_formed_file_validates(tmp_path: Path) -> None:
    path = write_fastq(tmp_path / "ok.fastq.gz", records=10)
    assert gzip_is_intact(path)
    assert validate_fastq(path)


def test_truncated_gzip_is_detected(tmp_path: Path) -> None:
    path = write_fastq(tmp_path / "ok.fastq.gz", records=50)
    data = path.read_bytes()
    path.write_bytes(data[: len(data) // 2])
    assert not gzip_is_intact(path)


def test_line_count_not_multiple_of_four_fails(tmp_path: Path) -> None:
    path = write_fastq(tmp_path / "short.fastq.gz", text="@r0\nACGT\n+\n")
    assert not validate_fastq(path)


def test_missing_header_sentinel_is_repaired(tmp_path: Path) -> None:
    path = write_fastq(tmp_path / "bad.fastq.gz", text="@r0\nACGT\n+\nIIII\nr1\nACGT\n+r1\nIIII\n")
    assert not validate_fastq(path)

    # two '+' separators but only one '@' header, so counts differ
    with pytest.raises(FastqRepairError):
        repair_fastq(path)
    assert not (tmp_path / "bad.fastq.gz.fixed").exists()


def test_repair_restores_header_and_separator_sentinels(tmp_path: Path) -> None:
    path = write_fastq(tmp_path / "sep.fastq.gz", text="@r0\nACGT\n+\nIIII\nr1\nACGT\nX\nIIII\n")
    assert not validate_fastq(path)

    repair_fastq(path)

    assert _read(path) == "@r0\nACGT\n+\nIIII\n@r1\nACGT\n+\nIIII\n"
    assert validate_fastq(path)
    assert not (tmp_path / "sep.fastq.gz.fixed").exists()


def test_count_mismatch_leaves_original_untouched(tmp_path: Path) -> None:
    text = "@r0\nACGT\n+\nIIII\n@r1\nACGT\n-\nIIII\n"
    path = write_fastq(tmp_path / "mismatch.fastq.gz", text=text)
    before = path.read_bytes()

    assert not check_and_repair(path, fix=True)
    assert path.read_bytes() == before
    assert not (tmp_path / "mismatch.fastq.gz.fixed").exists()


def test_size_ceiling_refuses_repair(tmp_path: Path) -> None:
    path = write_fastq(tmp_path / "big.fastq.gz", text="@r0\nACGT\n-\nIIII\n" * 10)
    with pytest.raises(FastqRepairError, match="too large"):
        repair_fastq(path, max_uncompressed_bytes=16)
    assert _read(path).startswith("@r0\nACGT\n-")


def test_fix_disabled_only_reports(tmp_path: Path) -> None:
    text = "@r0\nACGT\nX\nIIII\n"
    path = write_fastq(tmp_path / "nofix.fastq.gz", text=text)
    assert not check_and_repair(path, fix=False)
    assert _read(path) == text
