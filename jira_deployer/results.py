"""
Results Gathering

Best-effort collection of logs and metrics after a test run.
"""

from pathlib import Path
from typing import Protocol, Sequence

from loguru import logger

from .cloud.base import Storage
from .concurrency.stages import StageContext, StagePool, await_all

MAX_CONCURRENT_GATHERS = 4


class ResultsSource(Protocol):
    def gather_results(self) -> None:
        ...


def _gather(context: StageContext, source: ResultsSource) -> bool:
    try:
        source.gather_results()
    except Exception as e:
        context.logger.error(f"Failed to gather results from {source}: {e}")
        return False
    return True


def gather_results(sources: Sequence[ResultsSource], results_transport: Storage, target: Path) -> Path:
    """
    Have every source upload its results, then download the whole results
    transport into ``target``. A failing source is logged and skipped.

    Returns:
        The local directory holding the results
    """
    workers = max(1, min(len(sources), MAX_CONCURRENT_GATHERS))
    with StagePool("results-gathering", max_workers=workers) as pool:
        futures = [pool.submit(f"gather results from {source}", _gather, source) for source in sources]
        outcomes = await_all(futures)
    gathered = sum(1 for ok in outcomes if ok)
    logger.info(f"Gathered results from {gathered} of {len(sources)} sources")
    return results_transport.download(Path(target))
