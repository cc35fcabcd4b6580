from __future__ import annotations

import signal
from pathlib import Path

import pytest

from sra10x import runner
from sra10x.config import ENV_OVERRIDES

from conftest import FakeExecutor, write_manifest


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_executor(monkeypatch):
    executor = FakeExecutor()
    monkeypatch.setattr("sra10x.orchestrator.create_executor", lambda *a, **kw: executor)
    return executor


def test_cli_pass_exits_zero(tmp_path: Path, monkeypatch, fake_executor) -> None:
    write_manifest(tmp_path / "SraRunTable.txt", [("SRR1", "LibA")])
    (tmp_path / "ref").mkdir()
    monkeypatch.setenv("CELLRANGER_REF", str(tmp_path / "ref"))

    code = runner.main(
        ["--base-dir", str(tmp_path), "--skip-dependency-check", "--keep-fastqs", "--parallel-jobs", "1"]
    )

    assert code == runner.EXIT_OK
    assert (tmp_path / ".status" / "LibA.cellranger_complete").exists()
    assert not (tmp_path / ".status" / "LibA.fastqs_deleted").exists()
    assert len(fake_executor.tool_calls("cellranger")) == 1


def test_failed_entities_still_exit_zero(tmp_path: Path, monkeypatch) -> None:
    executor = FakeExecutor(failing_runs={"SRR1"})
    monkeypatch.setattr("sra10x.orchestrator.create_executor", lambda *a, **kw: executor)
    write_manifest(tmp_path / "SraRunTable.txt", [("SRR1", "LibA")])
    (tmp_path / "ref").mkdir()
    monkeypatch.setenv("CELLRANGER_REF", str(tmp_path / "ref"))

    assert runner.main(["--base-dir", str(tmp_path), "--skip-dependency-check"]) == runner.EXIT_OK


def test_missing_manifest_exits_one(tmp_path: Path, fake_executor) -> None:
    (tmp_path / "ref").mkdir()
    code = runner.main(
        ["--base-dir", str(tmp_path), "--manifest", str(tmp_path / "absent.txt"), "--skip-dependency-check"]
    )
    assert code == runner.EXIT_FATAL
    assert fake_executor.calls == []


def test_invalid_environment_exits_one(tmp_path: Path, monkeypatch, fake_executor) -> None:
    monkeypatch.setenv("PARALLEL_JOBS", "lots")
    assert runner.main(["--base-dir", str(tmp_path)]) == runner.EXIT_FATAL


def test_interrupt_exits_130(tmp_path: Path, monkeypatch, fake_executor) -> None:
    def interrupted(self):
        raise KeyboardInterrupt

    monkeypatch.setattr("sra10x.orchestrator.PipelineOrchestrator.run", interrupted)
    assert runner.main(["--base-dir", str(tmp_path), "--skip-dependency-check"]) == runner.EXIT_INTERRUPTED


def test_flags_override_configuration(tmp_path: Path) -> None:
    args = runner.parse_args(
        ["--base-dir", str(tmp_path), "--no-fix-fastq", "--recover-technical-reads", "--parallel-jobs", "6"]
    )
    config = runner.build_config(args)
    assert config.fix_fastq_format is False
    assert config.recover_technical_reads is True
    assert config.parallel_jobs == 6


def test_sigterm_unwinds_like_an_interrupt(tmp_path: Path, monkeypatch, fake_executor) -> None:
    seen = {}

    def terminated(self):
        seen["handler"] = signal.getsignal(signal.SIGTERM)
        runner.handle_termination(signal.SIGTERM, None)

    monkeypatch.setattr("sra10x.orchestrator.PipelineOrchestrator.run", terminated)
    previous = signal.getsignal(signal.SIGTERM)

    code = runner.main(["--base-dir", str(tmp_path), "--skip-dependency-check"])

    assert code == runner.EXIT_INTERRUPTED
    assert seen["handler"] is runner.handle_termination
    assert signal.getsignal(signal.SIGTERM) is previous
