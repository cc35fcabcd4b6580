from __future__ import annotations

from pathlib import Path

from sra10x.acquire import AcquisitionResult
from sra10x.ledger import Stage, StatusLedger
from sra10x.manifest_utils import load_manifest
from sra10x.report import build_summary, render_lines
from sra10x.sample_driver import SampleOutcome
from sra10x.state import SampleState, build_run_state

from conftest import write_manifest


def test_state_is_derived_from_ledger(tmp_path: Path) -> None:
    manifest = load_manifest(
        write_manifest(
            tmp_path / "SraRunTable.txt",
            [("R1", "Waiting"), ("R2", "Waiting"), ("R3", "Ready"), ("R4", "Formatted"), ("R5", "Done")],
        )
    )
    ledger = StatusLedger(tmp_path / ".status").ensure()
    for run_id in ("R1", "R3", "R4", "R5"):
        ledger.mark_done(run_id, Stage.ACQUIRED)
    ledger.mark_done("Formatted", Stage.TENX_FORMATTED)
    ledger.mark_done("Done", Stage.QUANTIFICATION_COMPLETE)
    ledger.mark_done("Done", Stage.TEMP_CLEANED)

    state = build_run_state(manifest, ledger)

    assert state.samples["Waiting"].acquired_run_count == 1
    assert state.samples["Waiting"].state is SampleState.AWAITING_ACQUISITION
    assert state.samples["Ready"].state is SampleState.ORGANIZING
    assert state.samples["Formatted"].state is SampleState.READY_FOR_QUANTIFICATION
    assert state.samples["Done"].state is SampleState.COMPLETE

    state.failed_runs = {"R2": "download failed"}
    assert state.failed_runs_for("Waiting") == ["R2"]
    assert state.failed_runs_for("Ready") == []


def test_report_lines_come_from_ledger(tmp_path: Path) -> None:
    ledger = StatusLedger(tmp_path).ensure()
    for run_id in ("R1", "R2", "R3"):
        ledger.mark_done(run_id, Stage.ACQUIRED)
    for sample in ("LibA", "LibB"):
        ledger.mark_done(sample, Stage.QUANTIFICATION_COMPLETE)
        ledger.mark_done(sample, Stage.TEMP_CLEANED)
    ledger.mark_done("LibB", Stage.INPUTS_DELETED)

    summary = build_summary(
        "20240101-000000",
        ledger,
        {"R4": AcquisitionResult("R4", "LibC", "failed", error="timed out")},
        {"LibC": SampleOutcome("LibC", SampleState.BLOCKED, 1)},
    )
    lines = render_lines(summary)

    assert "SRA Files processed: 3" in lines
    assert "Cellranger Analyses Completed: 2" in lines
    assert "Cellranger Temp Files Cleaned: 2" in lines
    assert "FASTQ Files Deleted: 1" in lines
    assert "  - LibA (FASTQs present)" in lines
    assert "  - LibB (FASTQs deleted)" in lines
    assert "  - R4: timed out" in lines
    assert summary.blocked_samples == ["LibC"]
