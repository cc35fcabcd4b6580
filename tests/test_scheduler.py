from __future__ import annotations

import threading

from sra10x.acquire import AcquisitionResult, RunAcquirer
from sra10x.ledger import Stage, StatusLedger
from sra10x.scheduler import run_acquisitions

from conftest import FakeExecutor


def test_results_keep_manifest_order(make_config, logger) -> None:
    config = make_config(parallel_jobs=3)
    ledger = StatusLedger(config.status_dir).ensure()
    acquirer = RunAcquirer(config, ledger, FakeExecutor(failing_runs={"SRR2"}), logger)
    items = [("SRR3", "LibA"), ("SRR1", "LibA"), ("SRR2", "LibB")]

    results = run_acquisitions(acquirer, items, parallel_jobs=3, logger=logger, progress=False)

    assert list(results) == ["SRR3", "SRR1", "SRR2"]
    assert [r.status for r in results.values()] == ["acquired", "acquired", "failed"]
    assert ledger.count(Stage.ACQUIRED) == 2


def test_concurrency_is_bounded(logger) -> None:
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}
    gate = threading.Barrier(2, timeout=5)

    class SlowAcquirer:
        def acquire_run(self, run_id, sample_key):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            try:
                gate.wait()
            except threading.BrokenBarrierError:
                pass
            with lock:
                active["now"] -= 1
            return AcquisitionResult(run_id, sample_key, "acquired")

    items = [(f"SRR{i}", "LibA") for i in range(6)]
    results = run_acquisitions(SlowAcquirer(), items, parallel_jobs=2, logger=logger, progress=False)

    assert len(results) == 6
    assert active["peak"] == 2


def test_worker_exception_becomes_failed_result(logger) -> None:
    class Exploding:
        def acquire_run(self, run_id, sample_key):
            if run_id == "SRR2":
                raise ValueError("boom")
            return AcquisitionResult(run_id, sample_key, "acquired")

    items = [("SRR1", "LibA"), ("SRR2", "LibA")]
    for jobs in (1, 2):
        results = run_acquisitions(Exploding(), items, parallel_jobs=jobs, logger=logger, progress=False)
        assert results["SRR1"].ok
        assert results["SRR2"].status == "failed"
        assert "boom" in results["SRR2"].error


def test_empty_work_list(logger) -> None:
    assert run_acquisitions(object(), [], parallel_jobs=4, logger=logger, progress=False) == {}
