"""Persistent state using JSON files."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Config, Job, JobStatus, OfflineAction


class Storage:
    """File-based storage for jobs, offline actions and configuration.

    Layout of the data directory:
        pending_actions.json  offline actions keyed by id
        offline_data.json     offline key/value store
        last_sync.json        timestamp of the last sync pass
        jobs.json             tracked jobs keyed by id
        config.json           runtime tuning
    """

    def __init__(self, data_dir: str = ".hubrelay"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.actions_file = self.data_dir / "pending_actions.json"
        self.offline_data_file = self.data_dir / "offline_data.json"
        self.last_sync_file = self.data_dir / "last_sync.json"
        self.jobs_file = self.data_dir / "jobs.json"
        self.config_file = self.data_dir / "config.json"

        # Initialize files if they don't exist
        for file_path in (self.actions_file, self.offline_data_file, self.jobs_file):
            if not file_path.exists():
                self._write_json(file_path, {})
        if not self.config_file.exists():
            self._write_json(self.config_file, Config().model_dump())

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return {}
        with open(file_path, "r") as f:
            return json.load(f)

    def load_actions(self) -> Dict[str, OfflineAction]:
        """Get all pending offline actions keyed by id."""
        actions = self._read_json(self.actions_file)
        return {action_id: OfflineAction(**data) for action_id, data in actions.items()}

    def save_actions(self, actions: Dict[str, OfflineAction]) -> None:
        """Replace the stored set of pending actions."""
        self._write_json(
            self.actions_file,
            {action_id: action.model_dump(mode="json") for action_id, action in actions.items()},
        )

    def load_offline_data(self) -> Dict[str, Any]:
        return self._read_json(self.offline_data_file)

    def save_offline_data(self, data: Dict[str, Any]) -> None:
        self._write_json(self.offline_data_file, data)

    def get_last_sync(self) -> Optional[datetime]:
        data = self._read_json(self.last_sync_file)
        value = data.get("last_sync_at")
        return datetime.fromisoformat(value) if value else None

    def set_last_sync(self, when: datetime) -> None:
        self._write_json(self.last_sync_file, {"last_sync_at": when.isoformat()})

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        data = self._read_json(self.jobs_file).get(job_id)
        return Job(**data) if data else None

    def save_job(self, job: Job) -> None:
        """Insert or update a job."""
        jobs = self._read_json(self.jobs_file)
        jobs[job.id] = job.model_dump(mode="json")
        self._write_json(self.jobs_file, jobs)

    def get_jobs_by_status(self, status: JobStatus) -> List[Job]:
        """Get all jobs in a specific state."""
        return [job for job in self.get_all_jobs() if job.status == status]

    def get_all_jobs(self) -> List[Job]:
        """Get all jobs."""
        jobs = self._read_json(self.jobs_file)
        return [Job(**data) for data in jobs.values()]

    def get_config(self) -> Config:
        """Get current configuration."""
        return Config(**self._read_json(self.config_file))

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        self._write_json(self.config_file, config.model_dump())

    def get_stats(self) -> Dict[str, int]:
        """Get job and queue statistics."""
        jobs = self._read_json(self.jobs_file)
        stats = {status.value: 0 for status in JobStatus}
        for job in jobs.values():
            state = job.get("status", JobStatus.PENDING.value)
            if state in stats:
                stats[state] += 1
        stats["total"] = len(jobs)
        stats["queued_actions"] = len(self._read_json(self.actions_file))
        return stats
