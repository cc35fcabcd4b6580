"""Read-file classification and the two renaming phases.

Phase one gives a run's downloaded files positional names ``{run}_N.fastq.gz``.
Phase two moves them into the sample directory under the canonical
``{sample}_S1_L{lane:03d}_{role}_001.fastq.gz`` names that cellranger
discovers by itself.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from .logger import get_logger


logger = get_logger("naming")

FASTQ_SUFFIX = ".fastq.gz"
STAGING_SUFFIX = ".standardizing"


class ChannelRole(str, Enum):
    READ1 = "R1"
    READ2 = "R2"
    INDEX1 = "I1"
    INDEX2 = "I2"
    UNCLASSIFIED = "unclassified"


ROLE_LAYOUTS: Dict[int, Tuple[ChannelRole, ...]] = {
    1: (ChannelRole.READ1,),
    2: (ChannelRole.READ1, ChannelRole.READ2),
    3: (ChannelRole.INDEX1, ChannelRole.READ1, ChannelRole.READ2),
    4: (ChannelRole.INDEX1, ChannelRole.INDEX2, ChannelRole.READ1, ChannelRole.READ2),
}

INDEX_HINTS = ("_I1_", "_index")
READ1_HINTS = ("_R1_",)
READ2_HINTS = ("_R2_",)

_CANONICAL_RE = re.compile(r"^(?P<sample>.+)_S1_L(?P<lane>\d{3})_(?P<role>R1|R2|I1|I2)_001\.fastq\.gz$")


class ClassificationError(RuntimeError):
    """Raised when a run's file set does not match a known layout; nothing is renamed."""


@dataclass(frozen=True)
class ReadFile:
    path: Path
    role: ChannelRole = ChannelRole.UNCLASSIFIED


def list_fastqs(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.name.endswith(FASTQ_SUFFIX))


def classify_roles(count: int) -> Tuple[ChannelRole, ...]:
    try:
        return ROLE_LAYOUTS[count]
    except KeyError:
        raise ClassificationError(f"Unexpected number of FASTQ files ({count})") from None


def _matches(name: str, hints: Sequence[str]) -> bool:
    return any(h in name for h in hints)


def order_by_hints(files: Sequence[Path]) -> Tuple[List[Path], bool]:
    """Order a three-file set as I1, R1, R2 when the name hints are unambiguous.

    Returns the ordered files and whether the hints were used; otherwise the
    files keep lexicographic order.
    """
    ordered = sorted(files)
    if len(ordered) != 3:
        return ordered, False

    index_files = [f for f in ordered if _matches(f.name, INDEX_HINTS)]
    read1_files = [f for f in ordered if _matches(f.name, READ1_HINTS)]
    read2_files = [f for f in ordered if _matches(f.name, READ2_HINTS)]
    if len(index_files) != 1 or len(read1_files) != 1 or len(read2_files) != 1:
        return ordered, False
    hinted = [index_files[0], read1_files[0], read2_files[0]]
    if len(set(hinted)) != 3:
        return ordered, False
    return hinted, True


def classify(files: Sequence[Path]) -> List[ReadFile]:
    ordered, _ = order_by_hints(files)
    roles = classify_roles(len(ordered))
    return [ReadFile(path=p, role=r) for p, r in zip(ordered, roles)]


def positional_name(run_id: str, position: int) -> str:
    return f"{run_id}_{position}{FASTQ_SUFFIX}"


def canonical_name(sample_key: str, lane: int, role: ChannelRole) -> str:
    if role is ChannelRole.UNCLASSIFIED:
        raise ClassificationError("Unclassified files have no canonical name")
    return f"{sample_key}_S1_L{lane:03d}_{ChannelRole(role).value}_001{FASTQ_SUFFIX}"


def _staging_name(run_id: str, position: int, original: str) -> str:
    return f".{run_id}_{position}.{original}{STAGING_SUFFIX}"


def _staged_files(run_dir: Path, run_id: str) -> List[Tuple[int, str, Path]]:
    pattern = re.compile(rf"^\.{re.escape(run_id)}_(\d+)\.(.+){re.escape(STAGING_SUFFIX)}$")
    found = []
    if not run_dir.is_dir():
        return found
    for p in run_dir.iterdir():
        m = pattern.match(p.name)
        if m and p.is_file():
            found.append((int(m.group(1)), m.group(2), p))
    return sorted(found)


def recover_standardize(run_dir: Path, run_id: str) -> int:
    """Put back files left under staging names by an interrupted ``standardize``.

    When every visible file already carries its positional name the second
    pass was cut short and is finished; otherwise the first pass was, and the
    staged files get their download names back. Returns the number of files
    moved.
    """
    staged = _staged_files(run_dir, run_id)
    if not staged:
        return 0

    visible = list_fastqs(run_dir)
    positions = _positions(visible, run_id)
    expected = set(range(1, len(visible) + len(staged) + 1))
    finish = len(positions) == len(visible) and set(positions) | {s[0] for s in staged} == expected

    for position, original, temp in staged:
        target = run_dir / (positional_name(run_id, position) if finish else original)
        if target.exists():
            raise ClassificationError(f"Cannot restore {temp.name} for {run_id}: {target.name} exists")
        os.replace(temp, target)
    logger.warning(
        "Recovered %d FASTQ files of %s from an interrupted rename (%s)",
        len(staged),
        run_id,
        "positional names" if finish else "download names",
    )
    return len(staged)


def standardize(run_dir: Path, run_id: str) -> List[Path]:
    recover_standardize(run_dir, run_id)
    files = list_fastqs(run_dir)
    logger.info("Standardizing names for %d FASTQ files in %s", len(files), run_dir)
    if len(files) not in ROLE_LAYOUTS:
        raise ClassificationError(
            f"Unexpected number of FASTQ files ({len(files)}) for {run_id}; files may need manual renaming"
        )

    ordered, hinted = order_by_hints(files)
    if len(files) == 3 and not hinted:
        logger.info("No unambiguous I1/R1/R2 name hints for %s, using positional order", run_id)

    targets = [run_dir / positional_name(run_id, i) for i in range(1, len(ordered) + 1)]
    if ordered == targets:
        return targets

    staged: List[Tuple[Path, Path]] = []
    for position, (source, target) in enumerate(zip(ordered, targets), start=1):
        temp = run_dir / _staging_name(run_id, position, source.name)
        os.replace(source, temp)
        staged.append((temp, target))
    for temp, target in staged:
        os.replace(temp, target)

    logger.info("After standardization, files in %s: %s", run_dir, ", ".join(t.name for t in targets))
    return targets


def _positions(files: Sequence[Path], run_id: str) -> Dict[int, Path]:
    pattern = re.compile(rf"^{re.escape(run_id)}_(\d+){re.escape(FASTQ_SUFFIX)}$")
    found = {}
    for p in files:
        m = pattern.match(p.name)
        if m:
            found[int(m.group(1))] = p
    return found


def positional_files(run_dir: Path, run_id: str) -> List[Path]:
    found = _positions(list_fastqs(run_dir), run_id)
    return [found[i] for i in sorted(found)]


def rename_to_canonical(
    run_dir: Path,
    run_id: str,
    sample_key: str,
    lane: int,
    sample_dir: Path,
) -> List[Path]:
    # files staged straight into the sample directory are picked up there
    files = positional_files(run_dir, run_id) or positional_files(sample_dir, run_id)
    lane_files = {
        role: sample_dir / canonical_name(sample_key, lane, role)
        for role in (ChannelRole.INDEX1, ChannelRole.INDEX2, ChannelRole.READ1, ChannelRole.READ2)
    }
    already = {role: p for role, p in lane_files.items() if p.exists()}

    if not files:
        if already:
            logger.info("Run %s already renamed as lane L%03d in %s", run_id, lane, sample_dir)
            return list(already.values())
        raise ClassificationError(f"No standardized FASTQ files for {run_id} in {run_dir}")

    # an interrupted rename leaves the lane split between both directories
    total = len(files) + len(already)
    roles = classify_roles(total)
    numbered = _positions(files, run_id)
    missing = [i for i in range(1, total + 1) if i not in numbered]
    if already:
        if len(missing) != len(already) or {roles[i - 1] for i in missing} != set(already):
            raise ClassificationError(
                f"Refusing to overwrite existing files for {run_id}: "
                + ", ".join(p.name for p in already.values())
                + f" do not continue an interrupted rename of lane L{lane:03d}"
            )
        logger.info(
            "Resuming interrupted rename of %s: %d of %d files already in %s",
            run_id,
            len(already),
            total,
            sample_dir,
        )
    elif missing:
        raise ClassificationError(
            f"Positional files for {run_id} are not numbered 1..{len(files)}: "
            + ", ".join(p.name for p in files)
        )

    moves = [(numbered[i], lane_files[roles[i - 1]]) for i in sorted(numbered)]
    conflicts = [dst for _, dst in moves if dst.exists()]
    if conflicts:
        raise ClassificationError(
            f"Refusing to overwrite existing files for {run_id}: " + ", ".join(p.name for p in conflicts)
        )

    logger.info("Renaming %d files from %s to 10X format with lane L%03d", len(moves), run_id, lane)
    sample_dir.mkdir(parents=True, exist_ok=True)
    for src, dst in moves:
        shutil.move(str(src), str(dst))
    return [lane_files[role] for role in roles]


def parse_canonical(name: str):
    m = _CANONICAL_RE.match(name)
    if not m:
        return None
    return m.group("sample"), int(m.group("lane")), ChannelRole(m.group("role"))


def count_roles(sample_dir: Path) -> Dict[ChannelRole, int]:
    counts = {role: 0 for role in ChannelRole}
    for p in list_fastqs(sample_dir):
        parsed = parse_canonical(p.name)
        role = parsed[2] if parsed else ChannelRole.UNCLASSIFIED
        counts[role] += 1
    return counts
