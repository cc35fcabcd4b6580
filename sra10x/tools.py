"""Command lines of the external collaborators and the preflight tool check."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Sequence

from .config import PipelineConfig


KINGFISHER = "kingfisher"
CELLRANGER = "cellranger"
PREFETCH = "prefetch"
FASTQ_DUMP = "fastq-dump"

REQUIRED_TOOLS = (KINGFISHER, CELLRANGER)
RECOVERY_TOOLS = (PREFETCH, FASTQ_DUMP)


class MissingToolError(RuntimeError):
    """Raised when a required executable is not on PATH."""


def kingfisher_get(
    run_id: str,
    output_dir: Path,
    *,
    threads: int,
    methods: Sequence[str],
    output_format: str = "fastq.gz",
) -> List[str]:
    return [
        KINGFISHER,
        "get",
        "-r",
        run_id,
        "-m",
        *methods,
        "--download-threads",
        str(threads),
        "-t",
        str(threads),
        "-f",
        output_format,
        "--output-directory",
        str(output_dir),
    ]


def prefetch(run_id: str, output_dir: Path) -> List[str]:
    return [PREFETCH, run_id, "-O", str(output_dir)]


def fastq_dump_technical(run_id: str, output_dir: Path) -> List[str]:
    return [
        FASTQ_DUMP,
        "--split-files",
        "--include-technical",
        "--gzip",
        "-O",
        str(output_dir),
        run_id,
    ]


def cellranger_count(
    sample_key: str,
    *,
    reference: Path,
    fastq_dir: Path,
    output_dir: Path,
    cores: int,
    memory_gb: int,
) -> List[str]:
    return [
        CELLRANGER,
        "count",
        f"--id={sample_key}",
        f"--transcriptome={reference}",
        f"--fastqs={fastq_dir}",
        f"--sample={sample_key}",
        "--create-bam=false",
        "--nosecondary",
        f"--localcores={cores}",
        f"--localmem={memory_gb}",
        f"--output-dir={output_dir}",
    ]


def tool_available(name: str, config: PipelineConfig) -> bool:
    # tools run through `conda run` are resolved inside that env
    if config.env_for(name):
        return shutil.which(config.executor.conda_executable or "conda") is not None
    return shutil.which(name) is not None


def check_dependencies(config: PipelineConfig, logger) -> None:
    logger.info("Checking for required tools...")
    missing = [name for name in REQUIRED_TOOLS if not tool_available(name, config)]
    if missing:
        for name in missing:
            logger.error("%s is not installed or not in your PATH", name)
        if KINGFISHER in missing:
            logger.error("Please install kingfisher with: pip install kingfisher-download")
        raise MissingToolError(f"Required tools not found: {', '.join(missing)}")

    if config.recover_technical_reads:
        for name in RECOVERY_TOOLS:
            if not tool_available(name, config):
                logger.warning("%s not available; technical read recovery will be skipped", name)

    logger.info("All required tools are available")
