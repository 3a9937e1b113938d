"""
Checkpointed stage tracking for workflows interrupted by host restarts.

The record is a small JSON document: the stage to resume into, the action
that advanced it, the workflow status and a snapshot of the configuration
gathered so far. A missing or unreadable record means "start from stage 1".
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from winlab.models import ValidationError

logger = logging.getLogger(__name__)

FIRST_STAGE = 1


class WorkflowStatus(Enum):
    """Whether a recorded workflow is paused mid-flow or finished."""

    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass
class StageRecord:
    """Persisted position of a deployment run."""

    stage: int
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    action: Optional[str] = None
    snapshot: Dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "action": self.action,
            "snapshot": self.snapshot,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageRecord":
        stage = data["stage"]
        if isinstance(stage, bool) or not isinstance(stage, int) or stage < FIRST_STAGE:
            raise ValueError(f"invalid stage {stage!r}")
        snapshot = data.get("snapshot") or {}
        if not isinstance(snapshot, dict):
            raise ValueError("snapshot must be an object")
        return cls(
            stage=stage,
            status=WorkflowStatus(data.get("status", WorkflowStatus.IN_PROGRESS.value)),
            action=data.get("action"),
            snapshot=snapshot,
            started_at=data.get("started_at", ""),
            updated_at=data.get("updated_at", ""),
        )


class StageController:
    """Persists and restores the stage of a restart-spanning workflow."""

    def __init__(self, stage_file: Path):
        """
        Initialize the controller.

        Args:
            stage_file: Path to the JSON stage record
        """
        self.stage_file = Path(stage_file)

    @classmethod
    def from_settings(cls, settings: Any) -> "StageController":
        return cls(settings.stage_file)

    def record(self) -> Optional[StageRecord]:
        """Read the stage record; None if absent or unreadable."""
        if not self.stage_file.exists():
            return None
        try:
            with open(self.stage_file) as f:
                return StageRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable stage record {self.stage_file}: {e}")
            return None

    def resume(self) -> int:
        """
        Stage to continue from at process start.

        Returns 1 when there is no record, when the record is corrupt, or when
        the previous run finished; otherwise the last advanced stage.
        """
        record = self.record()
        if record is None:
            return FIRST_STAGE
        if record.status == WorkflowStatus.COMPLETE:
            logger.info(f"Previous deployment completed at {record.updated_at}; starting a new run")
            return FIRST_STAGE
        logger.info(f"Resuming deployment at stage {record.stage} (after {record.action or 'start'})")
        return record.stage

    def snapshot(self) -> Dict[str, Any]:
        """Configuration snapshot stored with the current in-progress record."""
        record = self.record()
        if record is None or record.status == WorkflowStatus.COMPLETE:
            return {}
        return dict(record.snapshot)

    def is_complete(self) -> bool:
        record = self.record()
        return record is not None and record.status == WorkflowStatus.COMPLETE

    def advance(self, current_stage: int, triggering_action: str, snapshot: Optional[Dict[str, Any]] = None) -> int:
        """
        Record that ``current_stage`` finished and the next stage is safe to resume into.

        Call only after the action that makes the next stage well-defined has
        completed, typically right before a restart.

        Returns:
            The stage that was persisted (current_stage + 1)

        Raises:
            ValidationError: If the stage is invalid or would move backwards
        """
        if isinstance(current_stage, bool) or not isinstance(current_stage, int) or current_stage < FIRST_STAGE:
            raise ValidationError("stage", f"must be an integer >= {FIRST_STAGE}, got {current_stage!r}")

        next_stage = current_stage + 1
        previous = self.record()
        started_at = None
        if previous is not None and previous.status == WorkflowStatus.IN_PROGRESS:
            if next_stage < previous.stage:
                raise ValidationError(
                    "stage", f"cannot move back to stage {next_stage} from recorded stage {previous.stage}"
                )
            started_at = previous.started_at

        record = StageRecord(stage=next_stage, action=triggering_action, snapshot=dict(snapshot or {}))
        if started_at:
            record.started_at = started_at
        self._write(record)
        logger.info(f"Stage {current_stage} complete ({triggering_action}); next run resumes at stage {next_stage}")
        return next_stage

    def complete(self, snapshot: Optional[Dict[str, Any]] = None) -> None:
        """Mark the workflow finished so it is distinguishable from a paused run."""
        previous = self.record()
        stage = previous.stage if previous is not None else FIRST_STAGE
        record = StageRecord(
            stage=stage,
            status=WorkflowStatus.COMPLETE,
            action="complete",
            snapshot=dict(snapshot or {}),
        )
        if previous is not None and previous.started_at:
            record.started_at = previous.started_at
        self._write(record)
        logger.info("Deployment workflow complete")

    def reset(self) -> None:
        """Remove the stage record."""
        if self.stage_file.exists():
            self.stage_file.unlink()
            logger.info(f"Removed stage record {self.stage_file}")

    def _write(self, record: StageRecord) -> None:
        record.updated_at = datetime.now().isoformat()
        self.stage_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.stage_file.with_suffix(self.stage_file.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.stage_file)
