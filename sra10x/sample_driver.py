"""Per-sample progression from acquired runs to a verified cellranger output.

Every transition is gated by ledger markers, so a sample can be driven again
after any interruption. Read files are only ever deleted after both feature
matrices have been found on disk.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from . import tools
from .config import PipelineConfig
from .executor import BaseExecutor, ExecutorError, ExecutorTimeoutError
from .fastq import check_and_repair
from .ledger import EntityClaimedError, Stage, StatusLedger
from .naming import ChannelRole, ClassificationError, count_roles, list_fastqs, rename_to_canonical
from .state import SampleState


QUANT_OUTPUT_DIR = "cellranger_outs"
MATRIX_DIRS = ("filtered_feature_bc_matrix", "raw_feature_bc_matrix")
MATRIX_FILE = "matrix.mtx.gz"
TEMP_DIRS = (
    "SC_RNA_COUNTER_CS",
    "_cmdline",
    "_filelist",
    "_finalstate",
    "_invocation",
    "_jobmode",
    "_log",
    "_mrosource",
    "_sitecheck",
    "_tmpdir",
)


@dataclass
class SampleOutcome:
    sample_key: str
    state: SampleState
    expected_runs: int
    acquired_runs: int = 0
    organized_runs: int = 0
    inputs_deleted: bool = False
    message: Optional[str] = None


def assign_lanes(run_ids: Sequence[str]) -> Dict[str, int]:
    return {run_id: lane for lane, run_id in enumerate(run_ids, start=1)}


class SampleDriver:
    def __init__(
        self,
        config: PipelineConfig,
        ledger: StatusLedger,
        executor: BaseExecutor,
        logger: logging.Logger,
        *,
        log_dir: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.executor = executor
        self.logger = logger
        self.log_dir = log_dir

    def quant_root(self, sample_key: str) -> Path:
        return self.config.sample_dir(sample_key) / QUANT_OUTPUT_DIR

    def find_outs_dir(self, sample_key: str) -> Optional[Path]:
        root = self.quant_root(sample_key)
        for candidate in (root / "outs", root / sample_key / "outs"):
            if candidate.is_dir():
                return candidate
        return None

    def verify_output(self, sample_key: str) -> bool:
        outs = self.find_outs_dir(sample_key)
        if outs is None:
            self.logger.error("Cellranger output directory not found for %s", sample_key)
            return False
        for matrix_dir in MATRIX_DIRS:
            if not (outs / matrix_dir / MATRIX_FILE).is_file():
                label = "Filtered" if matrix_dir.startswith("filtered") else "Raw"
                self.logger.error("%s feature-barcode matrix not found for %s", label, sample_key)
                return False
        self.logger.info("Cellranger output for %s verified successfully", sample_key)
        return True

    def clean_temp(self, sample_key: str) -> None:
        if self.ledger.is_done(sample_key, Stage.TEMP_CLEANED):
            return
        self.logger.info("Cleaning up cellranger temporary files for %s...", sample_key)
        root = self.quant_root(sample_key)
        for name in TEMP_DIRS:
            if (root / name).is_dir():
                self.logger.info("Removing %s directory...", name)
                shutil.rmtree(root / name)
            elif (root / sample_key / name).is_dir():
                self.logger.info("Removing %s from alternate path...", name)
                shutil.rmtree(root / sample_key / name)
        self.ledger.mark_done(sample_key, Stage.TEMP_CLEANED)
        self.logger.info("Cleanup completed for %s", sample_key)

    def delete_inputs(self, sample_key: str) -> bool:
        if self.config.keep_inputs:
            self.logger.info("Keeping FASTQ files for %s as requested", sample_key)
            return False
        if self.ledger.is_done(sample_key, Stage.INPUTS_DELETED):
            return True
        if not self.verify_output(sample_key):
            self.logger.error(
                "Cellranger output verification failed for %s, keeping FASTQ files", sample_key
            )
            return False
        self.logger.info(
            "Deleting FASTQ files for %s after successful cellranger verification...", sample_key
        )
        removed = 0
        for path in sorted(self.config.sample_dir(sample_key).rglob("*.fastq.gz")):
            if path.is_file():
                path.unlink()
                removed += 1
        self.ledger.mark_done(sample_key, Stage.INPUTS_DELETED)
        self.logger.info("Deleted %d FASTQ files for %s", removed, sample_key)
        return True

    def organize(self, sample_key: str, run_ids: Sequence[str]) -> int:
        self.logger.info("Converting FASTQs for sample %s to 10X format...", sample_key)
        sample_dir = self.config.sample_dir(sample_key)
        sample_dir.mkdir(parents=True, exist_ok=True)
        organized = 0
        for run_id, lane in assign_lanes(run_ids).items():
            if not self.ledger.is_done(run_id, Stage.ACQUIRED):
                self.logger.info("Skipping run %s for sample %s - not yet processed", run_id, sample_key)
                continue
            self.logger.info("Organizing run %s as lane %d for sample %s", run_id, lane, sample_key)
            try:
                rename_to_canonical(self.config.run_dir(run_id), run_id, sample_key, lane, sample_dir)
            except ClassificationError as exc:
                self.logger.error("Error organizing run %s for sample %s: %s", run_id, sample_key, exc)
                continue
            organized += 1
        return organized

    def prepare_inputs(self, sample_key: str) -> bool:
        sample_dir = self.config.sample_dir(sample_key)
        if not sample_dir.is_dir():
            self.logger.error("Sample directory %s doesn't exist", sample_dir)
            return False
        fastqs = list_fastqs(sample_dir)
        if not fastqs:
            self.logger.error("No FASTQ files found in %s", sample_dir)
            return False

        self.logger.info("Validating all FASTQ files before running cellranger...")
        validation_failed = False
        for fastq in fastqs:
            if not check_and_repair(
                fastq,
                fix=self.config.fix_fastq_format,
                sample_records=self.config.validate_records,
                max_uncompressed_bytes=self.config.repair_max_bytes,
                repair_records=self.config.repair_validate_records,
            ):
                validation_failed = True
        if validation_failed:
            self.logger.warning("Some FASTQ files failed validation. Continuing with caution.")

        counts = count_roles(sample_dir)
        self.logger.info(
            "Found file counts - R1: %d, R2: %d, I1: %d, I2: %d",
            counts[ChannelRole.READ1],
            counts[ChannelRole.READ2],
            counts[ChannelRole.INDEX1],
            counts[ChannelRole.INDEX2],
        )
        if self.config.matches_index_hint(sample_key):
            if not counts[ChannelRole.READ1] or not counts[ChannelRole.READ2]:
                self.logger.error(
                    "Missing required R1 or R2 files for 10x sample %s. Cellranger requires these files.",
                    sample_key,
                )
                return False
            if not counts[ChannelRole.INDEX1]:
                self.logger.warning("No I1 index files found for 10x sample %s.", sample_key)
                self.logger.warning(
                    "This might be fine for single-sample data, but could cause issues with multiplexed samples."
                )
        return True

    def quantify(self, sample_key: str) -> bool:
        sample_dir = self.config.sample_dir(sample_key)
        fastqs = list_fastqs(sample_dir)
        self.logger.info("Running cellranger for sample %s with %d FASTQ files...", sample_key, len(fastqs))
        self.logger.info("FASTQ files: %s", " ".join(str(p) for p in fastqs))

        output_dir = self.quant_root(sample_key)
        output_dir.mkdir(parents=True, exist_ok=True)
        args = tools.cellranger_count(
            sample_key,
            reference=self.config.reference_path,
            fastq_dir=sample_dir,
            output_dir=output_dir,
            cores=self.config.threads_per_job,
            memory_gb=self.config.quant_memory_gb,
        )
        try:
            result = self.executor.run(
                args,
                env_name=self.config.env_for(tools.CELLRANGER),
                timeout=self.config.quant_timeout,
            )
        except ExecutorTimeoutError:
            self.logger.error(
                "cellranger timed out after %ds for %s", self.config.quant_timeout, sample_key
            )
            return False
        except ExecutorError as exc:
            self.logger.error("Error running cellranger for %s: %s", sample_key, exc)
            return False
        if self.log_dir:
            result.write_logs(self.log_dir, f"{sample_key}.cellranger")
        self.logger.info("Cellranger completed successfully for %s", sample_key)
        return True

    def drive(
        self,
        sample_key: str,
        run_ids: Sequence[str],
        failed_runs: Iterable[str] = (),
    ) -> SampleOutcome:
        self.logger.info("Processing sample: %s", sample_key)
        try:
            with self.ledger.claim(sample_key, Stage.QUANTIFICATION_COMPLETE):
                return self._drive(sample_key, list(run_ids), set(failed_runs))
        except EntityClaimedError as exc:
            self.logger.error("Sample %s is being processed elsewhere: %s", sample_key, exc)
            return SampleOutcome(sample_key, SampleState.BLOCKED, len(run_ids), message=str(exc))

    def _drive(self, sample_key: str, run_ids: List[str], failed_runs: set) -> SampleOutcome:
        expected = len(run_ids)
        outcome = SampleOutcome(sample_key, SampleState.COLLECTING_RUNS, expected)
        outcome.acquired_runs = self.ledger.count_done(run_ids, Stage.ACQUIRED)

        if self.ledger.is_done(sample_key, Stage.QUANTIFICATION_COMPLETE):
            self.logger.info("Cellranger already complete for %s", sample_key)
            outcome.organized_runs = expected
            return self._finish(outcome)

        if outcome.acquired_runs < expected:
            missing = expected - outcome.acquired_runs
            failed = [r for r in run_ids if r in failed_runs]
            if failed:
                outcome.state = SampleState.BLOCKED
                outcome.message = f"acquisition failed for {', '.join(failed)}"
            else:
                outcome.state = SampleState.AWAITING_ACQUISITION
                outcome.message = f"waiting for {missing} run(s)"
            self.logger.info(
                "Still waiting for %d runs to be processed for sample %s", missing, sample_key
            )
            return outcome

        outcome.state = SampleState.ORGANIZING
        if self.ledger.is_done(sample_key, Stage.TENX_FORMATTED):
            outcome.organized_runs = expected
        else:
            outcome.organized_runs = self.organize(sample_key, run_ids)
            if outcome.organized_runs != expected:
                outcome.state = SampleState.BLOCKED
                outcome.message = f"organized {outcome.organized_runs} of {expected} runs"
                self.logger.error(
                    "Only %d of %d runs organized for %s", outcome.organized_runs, expected, sample_key
                )
                return outcome
            self.ledger.mark_done(sample_key, Stage.TENX_FORMATTED)
            self.logger.info("All runs for %s have been converted to 10X format", sample_key)

        outcome.state = SampleState.READY_FOR_QUANTIFICATION
        self.logger.info("All runs for sample %s have been processed and organized", sample_key)
        if not self.prepare_inputs(sample_key):
            outcome.state = SampleState.BLOCKED
            outcome.message = "input read files are not usable"
            return outcome

        outcome.state = SampleState.QUANTIFYING
        if not self.quantify(sample_key):
            outcome.state = SampleState.BLOCKED
            outcome.message = "cellranger failed"
            return outcome

        outcome.state = SampleState.VERIFYING
        if not self.verify_output(sample_key):
            outcome.state = SampleState.BLOCKED
            outcome.message = "cellranger output verification failed, FASTQ files kept"
            self.logger.warning("Cellranger output verification failed for %s", sample_key)
            return outcome
        self.ledger.mark_done(sample_key, Stage.QUANTIFICATION_COMPLETE)

        return self._finish(outcome)

    def _finish(self, outcome: SampleOutcome) -> SampleOutcome:
        sample_key = outcome.sample_key
        outcome.state = SampleState.CLEANING_UP
        self.clean_temp(sample_key)

        outcome.state = SampleState.DELETING_INPUTS
        if self.config.keep_inputs:
            self.logger.info("Keeping FASTQ files for %s as requested", sample_key)
        elif not self.delete_inputs(sample_key):
            outcome.state = SampleState.BLOCKED
            outcome.message = "cellranger output verification failed, FASTQ files kept"
            return outcome
        outcome.inputs_deleted = self.ledger.is_done(sample_key, Stage.INPUTS_DELETED)
        outcome.state = SampleState.COMPLETE
        return outcome
