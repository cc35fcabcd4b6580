from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from . import tools
from .config import PipelineConfig
from .executor import BaseExecutor, ExecutorError, ExecutorTimeoutError
from .fastq import check_and_repair, gzip_is_intact
from .ledger import EntityClaimedError, Stage, StatusLedger
from .naming import ClassificationError, classify, list_fastqs, recover_standardize, standardize


DOWNLOAD_SUBDIR = "fastq"
TECHNICAL_TEMP_DIR = "temp_technical"


@dataclass
class AcquisitionResult:
    run_id: str
    sample_key: str
    status: str
    files: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class AcquisitionError(RuntimeError):
    """Raised inside the acquirer for a run that cannot be acquired in this invocation."""


class RunAcquirer:
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

    def existing_output(self, run_id: str, sample_key: str) -> Optional[str]:
        sample_dir = self.config.sample_dir(sample_key)
        if sample_dir.is_dir() and any(sample_dir.rglob(f"*{run_id}*.fastq.gz")):
            return "sample"
        if list_fastqs(self.config.run_dir(run_id)):
            return "run"
        return None

    def acquire_run(self, run_id: str, sample_key: str) -> AcquisitionResult:
        if self.ledger.is_done(run_id, Stage.ACQUIRED):
            self.logger.info("Skipping %s - already processed", run_id)
            return AcquisitionResult(run_id, sample_key, "skipped")

        try:
            with self.ledger.claim(run_id, Stage.ACQUIRED):
                return self._acquire_claimed(run_id, sample_key)
        except (AcquisitionError, ClassificationError, EntityClaimedError, ExecutorError) as exc:
            self.logger.error("Error acquiring %s for library %s: %s", run_id, sample_key, exc)
            return AcquisitionResult(run_id, sample_key, "failed", error=str(exc))

    def _acquire_claimed(self, run_id: str, sample_key: str) -> AcquisitionResult:
        # another worker may have finished between the first check and the claim
        if self.ledger.is_done(run_id, Stage.ACQUIRED):
            return AcquisitionResult(run_id, sample_key, "skipped")

        run_dir = self.config.run_dir(run_id)
        recover_standardize(run_dir, run_id)
        location = self.existing_output(run_id, sample_key)
        if location == "sample":
            self.logger.info(
                "FASTQ files for %s already exist in %s, marking as processed",
                run_id,
                self.config.sample_dir(sample_key),
            )
            self.ledger.mark_done(run_id, Stage.ACQUIRED)
            return AcquisitionResult(run_id, sample_key, "existing")
        if location == "run":
            self.logger.info("FASTQ files for %s already exist in %s/, marking as processed", run_id, run_dir)
            files = standardize(run_dir, run_id)
            self.ledger.mark_done(run_id, Stage.ACQUIRED)
            return AcquisitionResult(run_id, sample_key, "existing", files=[str(f) for f in files])

        self.logger.info("Processing accession: %s for library: %s", run_id, sample_key)
        run_dir.mkdir(parents=True, exist_ok=True)
        self.download(run_id, run_dir)
        self.normalize_layout(run_id, run_dir)
        self.check_technical_reads(run_id, sample_key, run_dir)
        self.verify_integrity(run_id, run_dir)

        files = standardize(run_dir, run_id)
        for read_file in classify(files):
            self.logger.info("  %s -> %s", read_file.path.name, read_file.role.value)

        self.ledger.mark_done(run_id, Stage.ACQUIRED)
        self.logger.info("Finished processing %s", run_id)
        return AcquisitionResult(run_id, sample_key, "acquired", files=[str(f) for f in files])

    def download(self, run_id: str, run_dir: Path) -> None:
        self.logger.info("Downloading %s with kingfisher...", run_id)
        args = tools.kingfisher_get(
            run_id,
            run_dir,
            threads=self.config.threads_per_job,
            methods=self.config.download_methods,
        )
        try:
            result = self.executor.run(
                args,
                env_name=self.config.env_for(tools.KINGFISHER),
                timeout=self.config.download_timeout,
            )
        except ExecutorTimeoutError as exc:
            raise AcquisitionError(
                f"kingfisher download timed out after {self.config.download_timeout}s for {run_id}"
            ) from exc
        except ExecutorError as exc:
            raise AcquisitionError(f"kingfisher download failed for {run_id}: {exc}") from exc
        if self.log_dir:
            result.write_logs(self.log_dir, f"{run_id}.kingfisher")

    def normalize_layout(self, run_id: str, run_dir: Path) -> None:
        if list_fastqs(run_dir):
            return
        nested = run_dir / DOWNLOAD_SUBDIR
        nested_files = list_fastqs(nested)
        if not nested_files:
            raise AcquisitionError(f"No FASTQ files found after download for {run_id}")
        self.logger.info("Moving FASTQ files from subdirectory to main directory")
        for path in nested_files:
            target = run_dir / path.name
            if not target.exists():
                os.replace(path, target)
        try:
            nested.rmdir()
        except OSError:
            pass

    def check_technical_reads(self, run_id: str, sample_key: str, run_dir: Path) -> None:
        present = list_fastqs(run_dir)
        if len(present) != 2 or not self.config.matches_index_hint(sample_key):
            return

        self.logger.warning(
            "Found only 2 FASTQ files for what appears to be 10x data (%s)", run_id
        )
        self.logger.warning(
            "Index files (I1/I2) may be missing. This might affect cellranger analysis if data is multiplexed."
        )
        if not self.config.recover_technical_reads:
            self.logger.info("Continuing with available files. Cellranger should work for single-sample data.")
            return
        self.recover_technical_reads(run_id, run_dir, len(present))

    def recover_technical_reads(self, run_id: str, run_dir: Path, present_count: int) -> int:
        """Best-effort extraction of index reads; returns the number of files merged in."""
        if not tools.tool_available(tools.FASTQ_DUMP, self.config):
            self.logger.warning("fastq-dump not available, skipping technical read recovery")
            return 0

        self.logger.info("Attempting to recover technical reads using fastq-dump...")
        temp_dir = run_dir / TECHNICAL_TEMP_DIR
        temp_dir.mkdir(parents=True, exist_ok=True)
        merged = 0
        try:
            try:
                self.executor.run(
                    tools.prefetch(run_id, temp_dir),
                    env_name=self.config.env_for(tools.PREFETCH),
                    timeout=self.config.download_timeout,
                )
            except ExecutorError as exc:
                self.logger.warning("prefetch failed, continuing with extraction attempt: %s", exc)

            try:
                self.executor.run(
                    tools.fastq_dump_technical(run_id, temp_dir),
                    env_name=self.config.env_for(tools.FASTQ_DUMP),
                    timeout=self.config.download_timeout,
                )
            except ExecutorError as exc:
                self.logger.warning("fastq-dump failed for %s: %s", run_id, exc)

            recovered = list_fastqs(temp_dir)
            if len(recovered) > present_count:
                self.logger.info("Successfully recovered additional files with fastq-dump")
                for path in recovered:
                    target = run_dir / path.name
                    if not target.exists():
                        os.replace(path, target)
                        merged += 1
            else:
                self.logger.info("No additional files recovered with fastq-dump")
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
        return merged

    def verify_integrity(self, run_id: str, run_dir: Path) -> None:
        self.logger.info("Verifying FASTQ integrity for %s...", run_id)
        for fastq in list_fastqs(run_dir):
            if not gzip_is_intact(fastq):
                self.logger.warning("FASTQ file %s appears to be corrupted", fastq)
                continue
            if not check_and_repair(
                fastq,
                fix=self.config.fix_fastq_format,
                sample_records=self.config.validate_records,
                max_uncompressed_bytes=self.config.repair_max_bytes,
                repair_records=self.config.repair_validate_records,
            ):
                self.logger.warning("File %s may cause problems with cellranger", fastq)
