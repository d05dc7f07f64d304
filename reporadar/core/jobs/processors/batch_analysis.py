"""
Batch repository analysis.

Analyzes many repositories in one job. A repository that cannot be analyzed
is recorded as failed in the result; the job itself only fails if something
outside the per-repository loop goes wrong.

Job data::

    {
        "repositories": [{"owner": "octo", "repo": "hello", "url": "..."}],
        "user_id": "u-1",                       # optional
    }
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol

from reporadar.core.exceptions import ValidationError
from reporadar.core.jobs.models import Job, utcnow
from reporadar.core.jobs.processor import BaseJobProcessor
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

JOB_TYPE = "batch-analysis"
DEFAULT_PAUSE_SECONDS = 1.0


class RepositoryAnalyzer(Protocol):
    """Fetches a repository and scores it."""

    async def analyze(self, owner: str, repo: str) -> Optional[Dict[str, Any]]:
        """Return the analysis, or None if the repository does not exist."""
        ...


class BatchAnalysisProcessor(BaseJobProcessor):
    """Processor for ``batch-analysis`` jobs."""

    def __init__(
        self,
        analyzer: RepositoryAnalyzer,
        pause_seconds: float = DEFAULT_PAUSE_SECONDS,
    ) -> None:
        """
        Args:
            analyzer: Repository analysis backend.
            pause_seconds: Pause between repositories to stay under
                upstream rate limits.
        """
        self.analyzer = analyzer
        self.pause_seconds = pause_seconds

    @staticmethod
    def _repositories(job: Job) -> List[Dict[str, Any]]:
        data = job.data if isinstance(job.data, dict) else {}
        repositories = data.get("repositories")
        if not isinstance(repositories, list):
            raise ValidationError("batch-analysis job data needs a 'repositories' list")
        for entry in repositories:
            if not isinstance(entry, dict) or not entry.get("owner") or not entry.get("repo"):
                raise ValidationError(
                    f"Each repository needs 'owner' and 'repo', got {entry!r}"
                )
        return repositories

    async def _analyze_one(self, owner: str, repo: str) -> Dict[str, Any]:
        name = f"{owner}/{repo}"
        try:
            analysis = await self.analyzer.analyze(owner, repo)
            if analysis is None:
                raise LookupError(f"Repository {name} not found")
        except Exception as e:
            logger.warning("Repository analysis failed", repository=name, error=str(e))
            return {"repository": name, "status": "failed", "error": str(e)}
        logger.debug("Repository analyzed", repository=name)
        return {"repository": name, "status": "success", "analysis": analysis}

    async def process(self, job: Job) -> Dict[str, Any]:
        repositories = self._repositories(job)
        total = len(repositories)
        logger.info("Starting batch analysis", job_id=job.id, repositories=total)

        results: List[Dict[str, Any]] = []
        for index, entry in enumerate(repositories):
            self.ensure_not_cancelled(job)
            results.append(await self._analyze_one(entry["owner"], entry["repo"]))
            await self.update_progress(job, round((index + 1) / total * 100))

            if index < total - 1 and self.pause_seconds > 0:
                await asyncio.sleep(self.pause_seconds)

        successful = sum(1 for r in results if r["status"] == "success")
        result = {
            "total_repositories": total,
            "successful_analyses": successful,
            "failed_analyses": total - successful,
            "results": results,
            "completed_at": utcnow().isoformat(),
        }
        logger.info(
            "Batch analysis finished",
            job_id=job.id,
            successful=successful,
            failed=total - successful,
        )
        return result
