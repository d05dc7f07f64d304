"""Built-in job processors."""

from typing import Optional

from reporadar.core.jobs.processors.batch_analysis import (
    BatchAnalysisProcessor,
    RepositoryAnalyzer,
)
from reporadar.core.jobs.processors.export import ExportProcessor, ExportSource
from reporadar.core.jobs.queue import JobQueue
from reporadar.core.logging import get_logger

logger = get_logger(__name__)


def register_default_processors(
    queue: JobQueue,
    analyzer: Optional[RepositoryAnalyzer] = None,
    source: Optional[ExportSource] = None,
) -> None:
    """
    Register the built-in processors whose backends are available.

    Args:
        queue: Queue to register on.
        analyzer: Backend for ``batch-analysis`` jobs.
        source: Backend for ``export`` jobs.
    """
    if analyzer is not None:
        queue.register_processor("batch-analysis", BatchAnalysisProcessor(analyzer))
    if source is not None:
        queue.register_processor("export", ExportProcessor(source))
    logger.info("Default job processors registered", job_types=",".join(queue.job_types))


__all__ = [
    "BatchAnalysisProcessor",
    "ExportProcessor",
    "ExportSource",
    "RepositoryAnalyzer",
    "register_default_processors",
]
