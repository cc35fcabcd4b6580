"""Structural FASTQ checks and a conservative repair pass for gzip-compressed read files.

A record is four lines: a header starting with ``@``, the sequence, a
separator starting with ``+`` and the qualities. Validation only looks at a
bounded prefix of the file; repair works on the whole decompressed stream.
"""

from __future__ import annotations

import gzip
import os
import shutil
import tempfile
import zlib
from itertools import islice
from pathlib import Path

from .logger import get_logger


logger = get_logger("fastq")

HEADER_SENTINEL = "@"
SEPARATOR_SENTINEL = "+"
DEFAULT_SAMPLE_RECORDS = 1000
REPAIR_SAMPLE_RECORDS = 5000
MAX_REPAIR_BYTES = 10_000_000_000
_READ_CHUNK = 1024 * 1024


class FastqRepairError(RuntimeError):
    """Raised when a FASTQ file cannot be repaired safely; the original is left untouched."""


def gzip_is_intact(path: Path) -> bool:
    """Read the whole compressed stream, the equivalent of ``gzip -t``."""
    try:
        with gzip.open(path, "rb") as handle:
            while handle.read(_READ_CHUNK):
                pass
    except (OSError, EOFError, zlib.error) as exc:
        logger.warning("Compressed stream check failed for %s: %s", path, exc)
        return False
    return True


def validate_fastq(path: Path, sample_records: int = DEFAULT_SAMPLE_RECORDS) -> bool:
    path = Path(path)
    logger.info("Validating FASTQ format for %s...", path)
    if not path.is_file() or path.stat().st_size == 0:
        logger.error("FASTQ file %s does not exist or is empty", path)
        return False

    try:
        with gzip.open(path, "rt", encoding="utf-8", errors="replace", newline="") as handle:
            lines = [line.rstrip("\r\n") for line in islice(handle, sample_records * 4)]
    except (OSError, EOFError, zlib.error) as exc:
        logger.error("Could not decompress %s: %s", path, exc)
        return False

    line_count = len(lines)
    if line_count % 4 != 0:
        logger.error(
            "FASTQ file %s has %d lines, which is not divisible by 4", path, line_count
        )
        return False

    for start in range(0, line_count, 4):
        if not lines[start].startswith(HEADER_SENTINEL):
            logger.error("Line %d should start with @ in %s", start + 1, path)
            logger.info("FASTQ validation failed for %s", path)
            return False
        if not lines[start + 2].startswith(SEPARATOR_SENTINEL):
            logger.error("Line %d should start with + in %s", start + 3, path)
            logger.info("FASTQ validation failed for %s", path)
            return False

    logger.info("FASTQ validation passed for %s", path)
    return True


def _count_sentinels(path: Path) -> tuple:
    headers = 0
    separators = 0
    with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
        for line in handle:
            if line.startswith(HEADER_SENTINEL):
                headers += 1
            elif line.startswith(SEPARATOR_SENTINEL):
                separators += 1
    return headers, separators


def _rewrite_records(source: Path, target: Path) -> None:
    with source.open("r", encoding="utf-8", errors="surrogateescape", newline="") as src, gzip.open(
        target, "wt", encoding="utf-8", errors="surrogateescape", newline=""
    ) as dst:
        for index, line in enumerate(src, start=1):
            body = line.rstrip("\r\n")
            position = index % 4
            if position == 1 and not body.startswith(HEADER_SENTINEL):
                body = HEADER_SENTINEL + body
            elif position == 3 and not body.startswith(SEPARATOR_SENTINEL):
                body = SEPARATOR_SENTINEL
            dst.write(body + "\n")


def repair_fastq(
    path: Path,
    *,
    max_uncompressed_bytes: int = MAX_REPAIR_BYTES,
    validate_records: int = REPAIR_SAMPLE_RECORDS,
) -> Path:
    path = Path(path)
    fixed_path = path.with_name(path.name + ".fixed")
    logger.info("Attempting to fix malformed FASTQ file: %s", path)

    temp_dir = Path(tempfile.mkdtemp(prefix=".fastq_fix_", dir=path.parent))
    try:
        extracted = temp_dir / "extracted.fastq"
        try:
            with gzip.open(path, "rb") as src, extracted.open("wb") as dst:
                written = 0
                while True:
                    chunk = src.read(_READ_CHUNK)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > max_uncompressed_bytes:
                        raise FastqRepairError(
                            f"File too large for fixing ({written}+ bytes > {max_uncompressed_bytes}): {path}"
                        )
                    dst.write(chunk)
        except (OSError, EOFError, zlib.error) as exc:
            raise FastqRepairError(f"Could not decompress {path}: {exc}") from exc

        header_count, separator_count = _count_sentinels(extracted)
        logger.info("Found %d sequence headers", header_count)
        logger.info("Found %d separator lines", separator_count)
        if header_count != separator_count:
            raise FastqRepairError(
                f"Mismatch between header count ({header_count}) and separator count "
                f"({separator_count}) in {path}"
            )

        _rewrite_records(extracted, fixed_path)

        if not validate_fastq(fixed_path, validate_records):
            fixed_path.unlink(missing_ok=True)
            raise FastqRepairError(f"Repaired output failed validation for {path}")

        os.replace(fixed_path, path)
        logger.info("Successfully fixed and validated FASTQ file %s", path)
        return path
    except BaseException:
        fixed_path.unlink(missing_ok=True)
        raise
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def check_and_repair(
    path: Path,
    *,
    fix: bool,
    sample_records: int = DEFAULT_SAMPLE_RECORDS,
    max_uncompressed_bytes: int = MAX_REPAIR_BYTES,
    repair_records: int = REPAIR_SAMPLE_RECORDS,
) -> bool:
    """Validate ``path`` and, when ``fix`` is set, try to repair it. Returns whether it is valid now."""
    if validate_fastq(path, sample_records):
        return True
    logger.warning("FASTQ file %s has format issues", path)
    if not fix:
        logger.warning("FASTQ fixing is disabled. File may cause problems with cellranger.")
        return False
    try:
        repair_fastq(path, max_uncompressed_bytes=max_uncompressed_bytes, validate_records=repair_records)
    except FastqRepairError as exc:
        logger.warning("Failed to fix format issues in %s: %s", path, exc)
        return False
    logger.info("Successfully fixed format issues in %s", path)
    return True
