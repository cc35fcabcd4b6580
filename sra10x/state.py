from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .ledger import Stage, StatusLedger
from .manifest_utils import ManifestData


class SampleState(str, Enum):
    COLLECTING_RUNS = "collecting_runs"
    AWAITING_ACQUISITION = "awaiting_acquisition"
    ORGANIZING = "organizing"
    READY_FOR_QUANTIFICATION = "ready_for_quantification"
    QUANTIFYING = "quantifying"
    VERIFYING = "verifying"
    CLEANING_UP = "cleaning_up"
    DELETING_INPUTS = "deleting_inputs"
    COMPLETE = "complete"
    BLOCKED = "blocked"


@dataclass
class SampleProgress:
    sample_key: str
    run_ids: List[str]
    state: SampleState = SampleState.COLLECTING_RUNS
    acquired_run_count: int = 0
    message: Optional[str] = None

    @property
    def expected_run_count(self) -> int:
        return len(self.run_ids)

    @property
    def ready(self) -> bool:
        return self.acquired_run_count == self.expected_run_count


@dataclass
class PipelineRunState:
    """Live view of every sample, rebuilt from the manifest and the ledger."""

    samples: Dict[str, SampleProgress] = field(default_factory=dict)
    failed_runs: Dict[str, str] = field(default_factory=dict)

    def refresh(self, ledger: StatusLedger) -> None:
        for progress in self.samples.values():
            progress.acquired_run_count = ledger.count_done(progress.run_ids, Stage.ACQUIRED)

    def in_state(self, state: SampleState) -> List[str]:
        return [key for key, p in self.samples.items() if p.state is state]

    def failed_runs_for(self, sample_key: str) -> List[str]:
        progress = self.samples.get(sample_key)
        if progress is None:
            return []
        return [run_id for run_id in progress.run_ids if run_id in self.failed_runs]


def build_run_state(manifest: ManifestData, ledger: StatusLedger) -> PipelineRunState:
    state = PipelineRunState(
        samples={
            key: SampleProgress(sample_key=key, run_ids=list(run_ids))
            for key, run_ids in manifest.samples.items()
        }
    )
    state.refresh(ledger)
    for progress in state.samples.values():
        progress.state = derive_state(progress, ledger)
    return state


def derive_state(progress: SampleProgress, ledger: StatusLedger) -> SampleState:
    """Furthest state the ledger alone proves for a sample."""
    key = progress.sample_key
    if ledger.is_done(key, Stage.QUANTIFICATION_COMPLETE):
        if ledger.is_done(key, Stage.TEMP_CLEANED):
            return SampleState.COMPLETE
        return SampleState.CLEANING_UP
    if not progress.ready:
        return SampleState.AWAITING_ACQUISITION
    if ledger.is_done(key, Stage.TENX_FORMATTED):
        return SampleState.READY_FOR_QUANTIFICATION
    return SampleState.ORGANIZING
