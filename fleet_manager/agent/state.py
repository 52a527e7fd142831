"""Persisted progress of the boot sequence."""

import os
from pathlib import Path

from pydantic import BaseModel, ValidationError

from fleet_manager.logging_config import get_logger

logger = get_logger(__name__)


class AgentProgress(BaseModel):
    """Last step completed during a given boot."""

    boot_id: str
    last_completed: str | None = None


class ProgressMarker:
    """Reads and writes :class:`AgentProgress` as JSON on the data volume."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> AgentProgress | None:
        """Read the marker; a missing or unreadable marker means no progress."""
        if not self.path.is_file():
            return None
        try:
            return AgentProgress.model_validate_json(self.path.read_text())
        except (ValidationError, OSError) as e:
            logger.warning(f"Ignoring unreadable progress marker {self.path}: {e}")
            return None

    def record(self, boot_id: str, step: str) -> None:
        progress = AgentProgress(boot_id=boot_id, last_completed=step)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(progress.model_dump_json())
        os.replace(tmp_path, self.path)
