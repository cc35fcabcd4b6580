"""End-of-pass status report, derived from the ledger rather than in-memory counters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .acquire import AcquisitionResult
from .artifacts import StageArtifact, save_artifact, save_text
from .ledger import Stage, StatusLedger
from .sample_driver import SampleOutcome


STAGE_LABELS = (
    (Stage.ACQUIRED, "SRA Files processed"),
    (Stage.QUANTIFICATION_COMPLETE, "Cellranger Analyses Completed"),
    (Stage.TEMP_CLEANED, "Cellranger Temp Files Cleaned"),
    (Stage.INPUTS_DELETED, "FASTQ Files Deleted"),
)


@dataclass
class PipelineSummary:
    run_id: str
    stage_counts: Dict[str, int] = field(default_factory=dict)
    completed_samples: Dict[str, bool] = field(default_factory=dict)
    sample_states: Dict[str, str] = field(default_factory=dict)
    failed_runs: Dict[str, str] = field(default_factory=dict)
    stages: List[StageArtifact] = field(default_factory=list)
    summary_paths: Dict[str, str] = field(default_factory=dict)

    @property
    def blocked_samples(self) -> List[str]:
        return [key for key, state in self.sample_states.items() if state == "blocked"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage_counts": dict(self.stage_counts),
            "completed_samples": {
                key: "deleted" if deleted else "present" for key, deleted in self.completed_samples.items()
            },
            "sample_states": dict(self.sample_states),
            "failed_runs": dict(self.failed_runs),
            "stages": [stage.to_dict() for stage in self.stages],
        }


def build_summary(
    run_id: str,
    ledger: StatusLedger,
    acquisitions: Dict[str, AcquisitionResult],
    outcomes: Dict[str, SampleOutcome],
    stages: Optional[List[StageArtifact]] = None,
) -> PipelineSummary:
    summary = PipelineSummary(run_id=run_id, stages=list(stages or []))
    for stage, label in STAGE_LABELS:
        summary.stage_counts[label] = ledger.count(stage)
    for sample_key in ledger.entities(Stage.QUANTIFICATION_COMPLETE):
        summary.completed_samples[sample_key] = ledger.is_done(sample_key, Stage.INPUTS_DELETED)
    for sample_key, outcome in outcomes.items():
        summary.sample_states[sample_key] = outcome.state.value
    for entity_id, result in acquisitions.items():
        if not result.ok:
            summary.failed_runs[entity_id] = result.error or "unknown error"
    return summary


def render_lines(summary: PipelineSummary) -> List[str]:
    lines = ["", "Processing Status:", "===================="]
    for label, count in summary.stage_counts.items():
        lines.append(f"{label}: {count}")

    lines.extend(["", "Processed Samples:"])
    for sample_key, deleted in sorted(summary.completed_samples.items()):
        lines.append(f"  - {sample_key} ({'FASTQs deleted' if deleted else 'FASTQs present'})")

    if summary.sample_states:
        lines.extend(["", "Sample States:"])
        for sample_key, state in summary.sample_states.items():
            lines.append(f"  - {sample_key}: {state}")

    if summary.failed_runs:
        lines.extend(["", "Failed Runs:"])
        for run_id, error in summary.failed_runs.items():
            lines.append(f"  - {run_id}: {error}")
    return lines


def write_report(summary: PipelineSummary, artifact_dir: Path, logger: logging.Logger) -> PipelineSummary:
    lines = render_lines(summary)
    for line in lines:
        logger.info(line)
    text_path = save_text(artifact_dir, lines)
    json_path = save_artifact(artifact_dir, summary.to_dict())
    summary.summary_paths = {"text": str(text_path), "json": str(json_path)}
    logger.info("Pipeline summary saved to %s", json_path)
    return summary
