"""Top-level pass over a manifest: acquire every run, then drive every sample."""

from __future__ import annotations

import datetime as dt
import shutil
import time
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

from . import tools
from .acquire import TECHNICAL_TEMP_DIR, AcquisitionResult, RunAcquirer
from .artifacts import StageArtifact
from .config import PipelineConfig
from .executor import BaseExecutor, create_executor
from .ledger import StatusLedger
from .logger import setup_logger
from .manifest_utils import ManifestData, ManifestFormatError, load_manifest
from .report import PipelineSummary, build_summary, write_report
from .sample_driver import SampleDriver, SampleOutcome
from .scheduler import run_acquisitions
from .state import SampleState, build_run_state


PREVIEW_LIMIT = 5
RUN_TEMP_DIRS = (TECHNICAL_TEMP_DIR, "tmp")


class PipelineFatalError(RuntimeError):
    """Raised when the pass cannot start at all."""


class PipelineOrchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        executor: Optional[BaseExecutor] = None,
        *,
        check_tools: bool = True,
    ) -> None:
        self.config = config
        self.check_tools = check_tools
        self.executor: BaseExecutor = executor or create_executor(
            config.executor.type,
            conda_executable=config.executor.conda_executable,
        )
        now = dt.datetime.now(dt.timezone.utc)
        self.run_id = now.strftime("%Y%m%d-%H%M%S")
        self.artifacts_dir = Path(config.artifacts_root) / self.run_id
        self.log_dir = self.artifacts_dir / "logs"
        self.log_path = self.log_dir / "pipeline.log"
        self.logger = setup_logger(self.log_path)
        self.ledger = StatusLedger(config.status_dir)
        self.manifest: Optional[ManifestData] = None
        self.stages: List[StageArtifact] = []
        self.logger.info("Pipeline orchestrator initialized (run %s)", self.run_id)

    def preflight(self) -> ManifestData:
        if self.check_tools:
            try:
                tools.check_dependencies(self.config, self.logger)
            except tools.MissingToolError as exc:
                raise PipelineFatalError(str(exc)) from exc

        manifest_path = Path(self.config.manifest_path)
        if not manifest_path.is_file():
            self.logger.error("SraRunTable file not found at %s", manifest_path)
            raise PipelineFatalError(f"Manifest not found: {manifest_path}")

        reference = Path(self.config.reference_path)
        if not reference.is_dir():
            self.logger.error("Cellranger reference not found at %s", reference)
            self.logger.error("Please set CELLRANGER_REF to the correct path")
            raise PipelineFatalError(f"Reference directory not found: {reference}")

        self.logger.info("Configuration:")
        for key, value in self.config.describe().items():
            self.logger.info("  %s: %s", key, value)

        manifest_cfg = self.config.manifest
        try:
            manifest = load_manifest(
                manifest_path,
                run_column=manifest_cfg.run_column,
                sample_column=manifest_cfg.sample_column,
                header_sentinel=manifest_cfg.header_sentinel,
            )
        except (FileNotFoundError, ManifestFormatError) as exc:
            raise PipelineFatalError(f"Unable to load manifest {manifest_path}: {exc}") from exc

        preview = manifest.run_ids[:PREVIEW_LIMIT]
        self.logger.info(
            "Found %d SRA accessions, first %d: %s",
            manifest.total,
            len(preview),
            " ".join(preview),
        )
        return manifest

    def run(self) -> PipelineSummary:
        self.logger.info("Starting pipeline run %s", self.run_id)
        self.manifest = self.preflight()
        self.ledger.ensure()
        try:
            acquisitions = self.run_acquisition_stage(self.manifest)
            outcomes = self.run_sample_stage(self.manifest, acquisitions)
        except KeyboardInterrupt:
            self.logger.warning("Pipeline interrupted. Cleaning up temporary directories...")
            raise
        finally:
            self.cleanup_temp_dirs(self.manifest)
            self.logger.info("Cleanup complete.")
        self.remove_empty_run_dirs(self.manifest)

        summary = build_summary(self.run_id, self.ledger, acquisitions, outcomes, self.stages)
        write_report(summary, self.artifacts_dir, self.logger)
        self.logger.info("Pipeline run %s completed", self.run_id)
        return summary

    def run_acquisition_stage(self, manifest: ManifestData) -> Dict[str, AcquisitionResult]:
        start = time.time()
        acquirer = RunAcquirer(self.config, self.ledger, self.executor, self.logger, log_dir=self.log_dir)
        results = run_acquisitions(
            acquirer,
            manifest.work_items(),
            parallel_jobs=self.config.parallel_jobs,
            logger=self.logger,
            progress=self.config.progress,
        )
        failures = {run_id: r.error or "" for run_id, r in results.items() if not r.ok}
        self.stages.append(
            StageArtifact(
                stage_name="acquisition",
                status="failed" if failures else "completed",
                elapsed_seconds=time.time() - start,
                counts=dict(Counter(r.status for r in results.values())),
                failures=failures,
                metadata={"parallel_jobs": self.config.parallel_jobs},
            )
        )
        self.logger.info("All SRA processing jobs completed")
        return results

    def run_sample_stage(
        self,
        manifest: ManifestData,
        acquisitions: Dict[str, AcquisitionResult],
    ) -> Dict[str, SampleOutcome]:
        start = time.time()
        self.logger.info("Checking for samples ready for cellranger...")
        run_state = build_run_state(manifest, self.ledger)
        run_state.failed_runs = {
            run_id: r.error or "" for run_id, r in acquisitions.items() if not r.ok
        }
        driver = SampleDriver(self.config, self.ledger, self.executor, self.logger, log_dir=self.log_dir)

        outcomes: Dict[str, SampleOutcome] = {}
        for sample_key, progress in run_state.samples.items():
            outcome = driver.drive(
                sample_key,
                progress.run_ids,
                failed_runs=run_state.failed_runs_for(sample_key),
            )
            progress.state = outcome.state
            progress.message = outcome.message
            outcomes[sample_key] = outcome

        blocked = {key: o.message or "" for key, o in outcomes.items() if o.state is SampleState.BLOCKED}
        self.stages.append(
            StageArtifact(
                stage_name="samples",
                status="failed" if blocked else "completed",
                elapsed_seconds=time.time() - start,
                counts=dict(Counter(o.state.value for o in outcomes.values())),
                failures=blocked,
            )
        )
        return outcomes

    def remove_empty_run_dirs(self, manifest: ManifestData) -> None:
        self.logger.info("Cleaning up empty SRR directories...")
        for run_id in manifest.run_ids:
            run_dir = self.config.run_dir(run_id)
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()

    def cleanup_temp_dirs(self, manifest: Optional[ManifestData]) -> None:
        if manifest is None:
            return
        for run_id in manifest.run_ids:
            for name in RUN_TEMP_DIRS:
                shutil.rmtree(self.config.run_dir(run_id) / name, ignore_errors=True)
