from __future__ import annotations

import json
import os
import socket
from pathlib import Path

import pytest

from sra10x.ledger import EntityClaimedError, LedgerError, Stage, StatusLedger


def test_markers_use_stage_suffixes(tmp_path: Path) -> None:
    ledger = StatusLedger(tmp_path / ".status").ensure()
    ledger.mark_done("SRR1", Stage.ACQUIRED)
    ledger.mark_done("SRR1", Stage.ACQUIRED)
    ledger.mark_done("LibA", Stage.QUANTIFICATION_COMPLETE)

    assert (tmp_path / ".status" / "SRR1.processed").is_file()
    assert (tmp_path / ".status" / "LibA.cellranger_complete").is_file()
    assert ledger.is_done("SRR1", Stage.ACQUIRED)
    assert not ledger.is_done("SRR2", Stage.ACQUIRED)
    assert ledger.count(Stage.ACQUIRED) == 1
    assert ledger.count_done(["SRR1", "SRR2"], Stage.ACQUIRED) == 1
    assert ledger.snapshot()["quantification_complete"] == 1


def test_reads_markers_left_by_earlier_runs(tmp_path: Path) -> None:
    status = tmp_path / ".status"
    status.mkdir()
    for name in ("SRR1.processed", "SRR2.processed", "LibA.10x_formatted", "LibA.fastqs_deleted"):
        (status / name).touch()

    ledger = StatusLedger(status)
    assert ledger.entities(Stage.ACQUIRED) == ["SRR1", "SRR2"]
    assert ledger.is_done("LibA", Stage.TENX_FORMATTED)
    assert ledger.is_done("LibA", Stage.INPUTS_DELETED)


def test_rejects_path_like_entity_ids(tmp_path: Path) -> None:
    ledger = StatusLedger(tmp_path)
    with pytest.raises(LedgerError):
        ledger.mark_done("../escape", Stage.ACQUIRED)


def test_claim_is_exclusive_and_released(tmp_path: Path) -> None:
    ledger = StatusLedger(tmp_path).ensure()
    with ledger.claim("SRR1", Stage.ACQUIRED) as path:
        assert path.is_file()
        record = json.loads(path.read_text(encoding="utf-8"))
        assert record["claimed_by"] == f"{socket.gethostname()}:{os.getpid()}"
        with pytest.raises(EntityClaimedError):
            ledger.acquire_claim("SRR1", Stage.ACQUIRED)
    assert not ledger.claim_path("SRR1", Stage.ACQUIRED).exists()


def test_stale_claim_from_dead_process_is_taken_over(tmp_path: Path) -> None:
    ledger = StatusLedger(tmp_path).ensure()
    path = ledger.claim_path("LibA", Stage.QUANTIFICATION_COMPLETE)
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps({"claimed_by": f"{socket.gethostname()}:4194305", "claimed_at": "2024-01-01T00:00:00+00:00"}),
        encoding="utf-8",
    )

    ledger.acquire_claim("LibA", Stage.QUANTIFICATION_COMPLETE)
    record = ledger.read_claim("LibA", Stage.QUANTIFICATION_COMPLETE)
    assert record["claimed_by"].endswith(f":{os.getpid()}")


def test_claim_from_other_host_is_respected(tmp_path: Path) -> None:
    ledger = StatusLedger(tmp_path).ensure()
    path = ledger.claim_path("SRR7", Stage.ACQUIRED)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"claimed_by": "other-node.example:1"}), encoding="utf-8")

    with pytest.raises(EntityClaimedError):
        ledger.acquire_claim("SRR7", Stage.ACQUIRED)
