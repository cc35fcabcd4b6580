from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Tuple

from tqdm import tqdm

from .acquire import AcquisitionResult, RunAcquirer


WorkItem = Tuple[str, str]


def _run_one(acquirer: RunAcquirer, item: WorkItem, logger: logging.Logger) -> AcquisitionResult:
    run_id, sample_key = item
    try:
        return acquirer.acquire_run(run_id, sample_key)
    except Exception as exc:
        logger.error("Acquisition of %s raised unexpectedly: %s", run_id, exc, exc_info=True)
        return AcquisitionResult(run_id, sample_key, "failed", error=str(exc))


def _run_sequential(
    acquirer: RunAcquirer,
    items: List[WorkItem],
    logger: logging.Logger,
    progress: bool,
) -> Dict[str, AcquisitionResult]:
    results: Dict[str, AcquisitionResult] = {}
    for item in tqdm(items, desc="Acquiring runs", unit="run", disable=not progress):
        results[item[0]] = _run_one(acquirer, item, logger)
    return results


def run_acquisitions(
    acquirer: RunAcquirer,
    work_items: Iterable[WorkItem],
    *,
    parallel_jobs: int,
    logger: logging.Logger,
    progress: bool = True,
) -> Dict[str, AcquisitionResult]:
    items = list(work_items)
    if not items:
        logger.info("No runs to acquire")
        return {}

    if parallel_jobs <= 1 or len(items) == 1:
        logger.info("Processing %d SRA runs sequentially...", len(items))
        return _run_sequential(acquirer, items, logger, progress)

    try:
        pool = ThreadPoolExecutor(max_workers=parallel_jobs, thread_name_prefix="acquire")
    except (RuntimeError, OSError) as exc:
        logger.warning("Parallel executor unavailable (%s), processing SRA runs sequentially...", exc)
        return _run_sequential(acquirer, items, logger, progress)

    logger.info("Processing %d SRA runs in parallel (max %d jobs)...", len(items), parallel_jobs)
    results: Dict[str, AcquisitionResult] = {}
    with pool:
        futures: Dict[Future[AcquisitionResult], WorkItem] = {}
        for item in items:
            futures[pool.submit(_run_one, acquirer, item, logger)] = item
        with tqdm(total=len(futures), desc="Acquiring runs", unit="run", disable=not progress) as bar:
            for future in as_completed(futures):
                run_id, sample_key = futures[future]
                try:
                    results[run_id] = future.result()
                except Exception as exc:
                    logger.error("Acquisition worker for %s failed: %s", run_id, exc, exc_info=True)
                    results[run_id] = AcquisitionResult(run_id, sample_key, "failed", error=str(exc))
                bar.update(1)

    # keep manifest order for reporting
    return {item[0]: results[item[0]] for item in items}
