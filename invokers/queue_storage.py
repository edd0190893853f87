"""
Persistence for the job queue.

QueueStorage keeps the full job sequence in one JSON file so pending work
survives a restart. Writes go to a temp file that is renamed over the target.
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from invokers.jobs import Job

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_PATH = "data/queue.json"


class QueueStorage:
    def __init__(self, path: Union[str, Path] = DEFAULT_QUEUE_PATH):
        self.path = Path(path)

    def load_jobs(self) -> List[Job]:
        """Load saved jobs. Missing or unreadable file -> empty list."""
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            jobs = [Job.from_dict(d) for d in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"[Storage] Failed to load queue from {self.path}: {e}")
            return []
        logger.info(f"[Storage] Loaded {len(jobs)} jobs from {self.path}")
        return jobs

    def save_jobs(self, jobs: List[Job]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump([j.to_dict() for j in jobs], f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"[Storage] Failed to save queue to {self.path}: {e}")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    @property
    def exists(self) -> bool:
        return self.path.exists()

    @property
    def file_size(self) -> Optional[int]:
        if not self.exists:
            return None
        return self.path.stat().st_size


class MemoryQueueStorage:
    """Keeps serialized jobs in memory. Used for tests and ephemeral queues."""

    def __init__(self, jobs: Optional[List[Job]] = None):
        self._data: List[dict] = [j.to_dict() for j in (jobs or [])]
        self.save_count = 0

    def load_jobs(self) -> List[Job]:
        return [Job.from_dict(d) for d in self._data]

    def save_jobs(self, jobs: List[Job]) -> None:
        self._data = [j.to_dict() for j in jobs]
        self.save_count += 1

    def clear(self) -> None:
        self._data = []
