"""
Persistence for named hardware templates.

Every save produces a new record with its own id; records are never
rewritten in place. Ids start with a UTC timestamp so lexical order is
creation order, and end with a random suffix so two saves within the same
clock tick still get distinct ids.
"""

import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from winlab.models import CorruptRecord, NotFound, TemplateRecord, TemplateSpec, ValidationError

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[0-9]{8}T[0-9]{12}Z-[0-9a-f]{8}$")


def new_template_id(created_at: datetime) -> str:
    """Build a sortable, collision-resistant template id."""
    return f"{created_at:%Y%m%dT%H%M%S%f}Z-{uuid.uuid4().hex[:8]}"


class TemplateStore(ABC):
    """Save/Load/List/Delete contract for template records."""

    def __init__(self, engine_version: str, clock: Optional[Callable[[], datetime]] = None):
        self.engine_version = engine_version
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def save(self, spec: TemplateSpec, name: str) -> str:
        """
        Persist a named, timestamped, versioned copy of a template.

        Duplicate names are allowed; each call returns a new id.

        Raises:
            ValidationError: If the name is empty
        """
        if not name or not name.strip():
            raise ValidationError("name", "template name is required")
        created_at = self.clock()
        record = TemplateRecord(
            template_id=new_template_id(created_at),
            name=name.strip(),
            created_at=created_at,
            engine_version=self.engine_version,
            spec=spec,
        )
        self._write(record)
        logger.info(f"Saved {spec.workload_type.value} template {record.name!r} as {record.template_id}")
        return record.template_id

    def find_by_name(self, name: str) -> TemplateRecord:
        """Return the newest record saved under a name."""
        matches = [record for record in self.list() if record.name == name]
        if not matches:
            raise NotFound(name)
        return matches[-1]

    @abstractmethod
    def _write(self, record: TemplateRecord) -> None:
        """Store a new record."""

    @abstractmethod
    def load(self, template_id: str) -> TemplateRecord:
        """
        Load a record by id.

        Raises:
            NotFound: If the id does not resolve
            CorruptRecord: If the stored data is not a valid template
        """

    @abstractmethod
    def list(self) -> List[TemplateRecord]:
        """All readable records in storage order; corrupt ones are logged and skipped."""

    @abstractmethod
    def delete(self, template_id: str) -> None:
        """Remove a record, raising NotFound if it does not exist."""

    @staticmethod
    def _decode(template_id: str, data: Any) -> TemplateRecord:
        try:
            record = TemplateRecord.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
            raise CorruptRecord(template_id, f"{type(e).__name__}: {e}") from e
        if record.template_id != template_id:
            raise CorruptRecord(template_id, f"record claims id {record.template_id!r}")
        return record


class FileTemplateStore(TemplateStore):
    """Stores one JSON document per template in a directory."""

    def __init__(self, directory: Path, engine_version: str, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(engine_version, clock)
        self.directory = Path(directory)

    @classmethod
    def from_settings(cls, settings: Any) -> "FileTemplateStore":
        return cls(settings.template_dir, settings.engine_version)

    def _path(self, template_id: str) -> Path:
        if not _ID_PATTERN.match(template_id):
            raise NotFound(template_id)
        return self.directory / f"{template_id}.json"

    def _write(self, record: TemplateRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(record.template_id)
        with open(path, "x") as f:
            json.dump(record.to_dict(), f, indent=2)

    def load(self, template_id: str) -> TemplateRecord:
        path = self._path(template_id)
        if not path.exists():
            raise NotFound(template_id)
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CorruptRecord(template_id, str(e)) from e
        return self._decode(template_id, data)

    def list(self) -> List[TemplateRecord]:
        if not self.directory.exists():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            template_id = path.stem
            try:
                records.append(self.load(template_id))
            except (CorruptRecord, NotFound) as e:
                logger.warning(f"Skipping unreadable template {path.name}: {e}")
        return records

    def delete(self, template_id: str) -> None:
        path = self._path(template_id)
        if not path.exists():
            raise NotFound(template_id)
        path.unlink()
        logger.info(f"Deleted template {template_id}")


class MemoryTemplateStore(TemplateStore):
    """Keeps serialized records in a dict; useful for dry runs and previews."""

    def __init__(self, engine_version: str, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(engine_version, clock)
        self._records: Dict[str, Dict[str, Any]] = {}

    def _write(self, record: TemplateRecord) -> None:
        self._records[record.template_id] = record.to_dict()

    def load(self, template_id: str) -> TemplateRecord:
        if template_id not in self._records:
            raise NotFound(template_id)
        return self._decode(template_id, self._records[template_id])

    def list(self) -> List[TemplateRecord]:
        records = []
        for template_id in sorted(self._records):
            try:
                records.append(self.load(template_id))
            except CorruptRecord as e:
                logger.warning(f"Skipping unreadable template {template_id}: {e}")
        return records

    def delete(self, template_id: str) -> None:
        if self._records.pop(template_id, None) is None:
            raise NotFound(template_id)
