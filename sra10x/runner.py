from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path

from .config import ConfigError, ConfigLoader, PipelineConfig
from .logger import setup_logger
from .orchestrator import PipelineFatalError, PipelineOrchestrator


EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sra10x",
        description="Download SRA runs, stage them as 10x FASTQs and run cellranger count per library",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to pipeline configuration file (YAML or JSON)",
    )
    parser.add_argument(
        "--base-dir",
        type=Path,
        help="Working directory holding the run table and per-run folders (default: current directory)",
    )
    parser.add_argument("--manifest", type=Path, help="Path to SraRunTable.txt")
    parser.add_argument("--parallel-jobs", type=int, help="Number of runs downloaded concurrently")
    parser.add_argument(
        "--keep-fastqs",
        action="store_true",
        help="Keep FASTQ files after cellranger output has been verified",
    )
    parser.add_argument(
        "--no-fix-fastq",
        action="store_true",
        help="Only validate FASTQ files, never rewrite them",
    )
    parser.add_argument(
        "--recover-technical-reads",
        action="store_true",
        help="Try fastq-dump for missing index reads of 10x runs",
    )
    parser.add_argument(
        "--skip-dependency-check",
        action="store_true",
        help="Do not check for kingfisher/cellranger on PATH",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    config = ConfigLoader(args.config, base_dir=args.base_dir).load()
    # command line flags win over file and environment
    if args.manifest:
        config.manifest_path = args.manifest.expanduser().resolve()
    if args.parallel_jobs is not None:
        if args.parallel_jobs < 1:
            raise ConfigError(f"--parallel-jobs must be >= 1, got {args.parallel_jobs}")
        config.parallel_jobs = args.parallel_jobs
    if args.keep_fastqs:
        config.keep_inputs = True
    if args.no_fix_fastq:
        config.fix_fastq_format = False
    if args.recover_technical_reads:
        config.recover_technical_reads = True
    return config


def handle_termination(signum, frame):
    """SIGTERM unwinds like Ctrl-C so the orchestrator's cleanup runs."""
    raise KeyboardInterrupt(f"terminated by signal {signum}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logger = setup_logger()

    try:
        config = build_config(args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FATAL

    orchestrator = PipelineOrchestrator(config, check_tools=not args.skip_dependency_check)
    previous_handler = signal.signal(signal.SIGTERM, handle_termination)
    try:
        summary = orchestrator.run()
    except PipelineFatalError as exc:
        orchestrator.logger.error("Pipeline cannot start: %s", exc)
        return EXIT_FATAL
    except KeyboardInterrupt:
        orchestrator.logger.warning("Pipeline interrupted")
        return EXIT_INTERRUPTED
    except Exception as exc:  # pragma: no cover - top-level guard
        orchestrator.logger.error("Pipeline run failed: %s", exc, exc_info=True)
        return EXIT_FATAL
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if summary.failed_runs or summary.blocked_samples:
        orchestrator.logger.warning(
            "Pass finished with %d failed runs and %d blocked samples; rerun to resume",
            len(summary.failed_runs),
            len(summary.blocked_samples),
        )
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
