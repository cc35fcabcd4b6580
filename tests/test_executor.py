from __future__ import annotations

import sys
from pathlib import Path

import pytest

from sra10x.executor import ExecutorError, ExecutorTimeoutError, LocalExecutor, create_executor


def test_runs_command_and_captures_output(tmp_path: Path) -> None:
    result = LocalExecutor().run([sys.executable, "-c", "print('hello')"])
    assert result.returncode == 0
    assert result.stdout.strip() == "hello"

    result.write_logs(tmp_path / "logs", "SRR1.kingfisher")
    assert (tmp_path / "logs" / "SRR1.kingfisher.stdout.log").read_text(encoding="utf-8").strip() == "hello"
    assert (tmp_path / "logs" / "SRR1.kingfisher.stderr.log").exists()


def test_non_zero_exit_raises() -> None:
    with pytest.raises(ExecutorError, match="code 3"):
        LocalExecutor().run([sys.executable, "-c", "import sys; sys.exit(3)"])


def test_non_zero_exit_allowed_without_check() -> None:
    result = LocalExecutor().run([sys.executable, "-c", "import sys; sys.exit(3)"], check=False)
    assert result.returncode == 3


def test_missing_executable_raises() -> None:
    with pytest.raises(ExecutorError, match="Executable not found"):
        LocalExecutor().run(["definitely-not-a-real-tool-sra10x"])


def test_timeout_raises_timeout_error() -> None:
    with pytest.raises(ExecutorTimeoutError):
        LocalExecutor().run([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.5)


def test_conda_env_wraps_command() -> None:
    executor = LocalExecutor(conda_executable="mamba")
    assert executor._build_command(["cellranger", "count"], "cr") == ["mamba", "run", "-n", "cr", "cellranger", "count"]
    assert executor._build_command(["cellranger"], None) == ["cellranger"]


def test_unknown_executor_type() -> None:
    with pytest.raises(ValueError):
        create_executor("slurm")
