"""File-based store for run summaries, integrity reports and rejections."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models.migration import MigrationRun
from ..models.report import IntegrityReport

logger = logging.getLogger(__name__)


class ReportStore:
    """
    JSON files under ``<output_dir>/logs``:

    - ``run_<run_id>.json``: MigrationRun summary
    - ``integrity_<run_id>.json``: IntegrityReport
    - ``rejected_<run_id>.json``: quarantined records
    """

    def __init__(self, output_dir: str):
        self.logs_dir = Path(output_dir) / "logs"

    def _path(self, kind: str, run_id: str) -> Path:
        return self.logs_dir / f"{kind}_{run_id}.json"

    def _write(self, path: Path, data: Any) -> Path:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        return path

    def _read(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def save_run(self, run: MigrationRun) -> Path:
        """Save the run summary (without the quarantined records)."""
        data = run.to_dict()
        data["quarantined_count"] = len(data.pop("quarantined", []))
        path = self._write(self._path("run", run.id), data)
        logger.info(f"Saved migration report to {path}")
        return path

    def save_integrity(self, report: IntegrityReport) -> Path:
        return self._write(self._path("integrity", report.run_id), report.to_dict())

    def save_rejected(self, run: MigrationRun) -> Path:
        return self._write(self._path("rejected", run.id), [q.to_dict() for q in run.quarantined])

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._read(self._path("run", run_id))

    def get_integrity(self, run_id: str) -> Optional[IntegrityReport]:
        data = self._read(self._path("integrity", run_id))
        return IntegrityReport.from_dict(data) if data else None

    def get_rejections(self, run_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._read(self._path("rejected", run_id))

    def list_runs(self) -> List[Dict[str, Any]]:
        """Run summaries, newest first."""
        if not self.logs_dir.exists():
            return []

        summaries = []
        for path in self.logs_dir.glob("run_*.json"):
            try:
                data = self._read(path)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to read run report {path}: {e}")
                continue
            summaries.append({
                "id": data.get("id"),
                "name": data.get("name"),
                "status": data.get("status"),
                "dry_run": data.get("dry_run", False),
                "started_at": data.get("started_at"),
                "completed_at": data.get("completed_at"),
                "total_records_processed": data.get("total_records_processed", 0),
                "total_records_succeeded": data.get("total_records_succeeded", 0),
                "total_records_failed": data.get("total_records_failed", 0),
                "total_records_rejected": data.get("total_records_rejected", 0),
            })

        summaries.sort(key=lambda s: s.get("started_at") or "", reverse=True)
        return summaries
