from __future__ import annotations

import gzip
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

# Ensure project root is on sys.path for package imports like `sra10x.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sra10x.config import ConfigLoader, PipelineConfig  # noqa: E402
from sra10x.executor import BaseExecutor, ExecResult, ExecutorError  # noqa: E402
from sra10x.logger import get_logger  # noqa: E402


MANIFEST_HEADER = ["Run"] + [f"Field{i}" for i in range(1, 14)] + ["Library Name"]


def fastq_text(records: int = 3, prefix: str = "read") -> str:
    lines = []
    for i in range(records):
        lines.extend([f"@{prefix}{i}", "ACGT", "+", "IIII"])
    return "\n".join(lines) + "\n"


def write_fastq(
    path: Path, records: int = 3, *, text: Optional[str] = None, prefix: str = "read"
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt", encoding="utf-8") as handle:
        handle.write(text if text is not None else fastq_text(records, prefix))
    return path


def write_manifest(path: Path, rows: Iterable[Sequence[str]], *, header: bool = True) -> Path:
    lines = []
    if header:
        lines.append("\t".join(MANIFEST_HEADER))
    for run_id, sample_key in rows:
        cells = [run_id] + [""] * 13 + [sample_key]
        lines.append("\t".join(cells))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class FakeExecutor(BaseExecutor):
    """Scripted stand-in for kingfisher, prefetch, fastq-dump and cellranger."""

    def __init__(
        self,
        downloads: Optional[Dict[str, List[str]]] = None,
        *,
        default_files: int = 2,
        failing_runs: Iterable[str] = (),
        matrices: Sequence[str] = ("filtered_feature_bc_matrix", "raw_feature_bc_matrix"),
        cellranger_fails: bool = False,
        nested_download: bool = False,
    ) -> None:
        self.downloads = downloads or {}
        self.default_files = default_files
        self.failing_runs = set(failing_runs)
        self.matrices = tuple(matrices)
        self.cellranger_fails = cellranger_fails
        self.nested_download = nested_download
        self.calls: List[List[str]] = []

    def tool_calls(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if c and c[0] == tool]

    def run(self, args, *, env_name=None, cwd=None, capture_output=True, check=True, extra_env=None, timeout=None):
        args = [str(a) for a in args]
        self.calls.append(args)
        tool = args[0]
        if tool == "kingfisher":
            self._kingfisher(args)
        elif tool == "cellranger":
            self._cellranger(args)
        return ExecResult(command=args, returncode=0, stdout="ok\n", stderr="", elapsed_seconds=0.0)

    def _kingfisher(self, args: List[str]) -> None:
        run_id = args[args.index("-r") + 1]
        if run_id in self.failing_runs:
            raise ExecutorError(f"Command failed with code 1: kingfisher get -r {run_id}")
        out_dir = Path(args[args.index("--output-directory") + 1])
        if self.nested_download:
            out_dir = out_dir / "fastq"
        names = self.downloads.get(
            run_id, [f"{run_id}_{i}.fastq.gz" for i in range(1, self.default_files + 1)]
        )
        for name in names:
            write_fastq(out_dir / name, prefix=run_id)

    def _cellranger(self, args: List[str]) -> None:
        if self.cellranger_fails:
            raise ExecutorError("Command failed with code 1: cellranger count")
        options = dict(a[2:].split("=", 1) for a in args[2:] if a.startswith("--") and "=" in a)
        root = Path(options["output-dir"])
        outs = root / "outs"
        for matrix in self.matrices:
            target = outs / matrix / "matrix.mtx.gz"
            target.parent.mkdir(parents=True, exist_ok=True)
            with gzip.open(target, "wt", encoding="utf-8") as handle:
                handle.write("%%MatrixMarket matrix coordinate integer general\n")
        for name in ("SC_RNA_COUNTER_CS", "_log", "_tmpdir"):
            (root / name).mkdir(parents=True, exist_ok=True)


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(**overrides) -> PipelineConfig:
        config = ConfigLoader(None, base_dir=tmp_path, environ={}).load()
        reference = tmp_path / "reference"
        reference.mkdir(exist_ok=True)
        config.reference_path = reference
        config.progress = False
        config.parallel_jobs = 2
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    return _make


@pytest.fixture
def logger():
    return get_logger("tests")
