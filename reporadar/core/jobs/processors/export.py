"""
Large data exports.

Fetches analyses, repositories or a user's saved repositories through an
ExportSource and renders them as CSV or JSON.

Job data::

    {
        "format": "csv" | "json",
        "export_type": "analyses" | "repositories" | "saved",
        "user_id": "u-1",              # required for "saved"
        "filters": {"start_date": ..., "end_date": ..., "language": ...},
    }
"""

import csv
import io
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol

from reporadar.core.exceptions import ValidationError
from reporadar.core.jobs.models import Job, utcnow
from reporadar.core.jobs.processor import BaseJobProcessor
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

JOB_TYPE = "export"
EXPORT_FORMATS = ("csv", "json")
EXPORT_TYPES = ("analyses", "repositories", "saved")
MAX_EXPORT_RECORDS = 10_000

Record = Dict[str, Any]


class ExportSource(Protocol):
    """Read access to the data being exported."""

    async def fetch_analyses(
        self, user_id: Optional[str], filters: Dict[str, Any], limit: int
    ) -> List[Record]:
        ...

    async def fetch_repositories(
        self, user_id: Optional[str], filters: Dict[str, Any], limit: int
    ) -> List[Record]:
        ...

    async def fetch_saved(self, user_id: str, limit: int) -> List[Record]:
        ...


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def render_csv(records: List[Record]) -> str:
    """Render records as CSV; headers come from the first record."""
    if not records:
        return ""
    headers = list(records[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for record in records:
        writer.writerow([_csv_cell(record.get(h)) for h in headers])
    return buffer.getvalue().rstrip("\n")


def render_json(records: List[Record]) -> str:
    return json.dumps(
        {
            "exported_at": utcnow().isoformat(),
            "record_count": len(records),
            "data": records,
        },
        indent=2,
        default=str,
    )


class ExportProcessor(BaseJobProcessor):
    """Processor for ``export`` jobs."""

    def __init__(self, source: ExportSource, max_records: int = MAX_EXPORT_RECORDS) -> None:
        self.source = source
        self.max_records = max_records

    async def _fetch(
        self, export_type: str, user_id: Optional[str], filters: Dict[str, Any]
    ) -> List[Record]:
        if export_type == "analyses":
            return await self.source.fetch_analyses(user_id, filters, self.max_records)
        if export_type == "repositories":
            return await self.source.fetch_repositories(user_id, filters, self.max_records)
        if not user_id:
            raise ValidationError(
                "User ID required for saved repositories export",
                how_to_fix=["Log in before exporting saved repositories"],
            )
        return await self.source.fetch_saved(user_id, self.max_records)

    async def process(self, job: Job) -> Dict[str, Any]:
        data = job.data if isinstance(job.data, dict) else {}
        fmt = data.get("format", "json")
        export_type = data.get("export_type")
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Invalid export format: {fmt}")
        if export_type not in EXPORT_TYPES:
            raise ValidationError(f"Invalid export type: {export_type}")
        user_id = data.get("user_id")
        filters = data.get("filters") or {}

        logger.info("Starting export", job_id=job.id, format=fmt, export_type=export_type)
        await self.update_progress(job, 10)

        records = await self._fetch(export_type, user_id, filters)
        await self.update_progress(job, 50)
        self.ensure_not_cancelled(job)

        rendered = render_csv(records) if fmt == "csv" else render_json(records)
        stamp = int(utcnow().timestamp() * 1000)
        await self.update_progress(job, 90)

        logger.info("Export finished", job_id=job.id, records=len(records), format=fmt)
        return {
            "format": fmt,
            "record_count": len(records),
            "data": rendered,
            "file_name": f"{export_type}_export_{stamp}.{fmt}",
            "completed_at": utcnow().isoformat(),
        }
