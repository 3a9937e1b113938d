"""Data models and errors for template-driven VM provisioning."""

import dataclasses
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, Optional, Tuple


class WinlabError(Exception):
    """Base exception for winlab errors."""

    pass


class ValidationError(WinlabError):
    """Raised when a template field or request value is invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class NameCollision(WinlabError):
    """Raised when a target instance name is already in use."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Instance name {name!r} already exists")


class NoNetworkTarget(WinlabError):
    """Raised when the requested network is not available on the host."""

    def __init__(self, network: str, available: Tuple[str, ...] = ()):
        self.network = network
        self.available = tuple(available)
        choices = ", ".join(self.available) if self.available else "none"
        super().__init__(f"Network {network!r} not found (available: {choices})")


class NotFound(WinlabError):
    """Raised when a template id or stage record does not resolve."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"{key!r} not found")


class CorruptRecord(WinlabError):
    """Raised when a stored record cannot be deserialized into a valid object."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Record {key!r} is corrupt: {reason}")


class CapabilityFailure(WinlabError):
    """Raised when a hypervisor or host capability call fails."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed: {reason}")


class CommandError(WinlabError):
    """Raised when a PowerShell invocation exits unsuccessfully."""

    def __init__(self, command: str, exit_code: Optional[int], stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        first_line = command.strip().splitlines()[0] if command.strip() else command
        super().__init__(f"Command {first_line!r} exited with {exit_code}: {stderr}")


class ProvisioningStep(IntEnum):
    """Ordered capability steps performed when realising a plan."""

    CREATE_INSTANCE = 1
    SET_PROCESSOR = 2
    SET_MEMORY = 3
    SET_FIRMWARE = 4
    ATTACH_DISKS = 5
    ADD_ADAPTERS = 6
    ENABLE_INTEGRATION = 7
    START_INSTANCE = 8

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


class PartialProvisioning(WinlabError):
    """An instance was created but a later configuration step failed."""

    def __init__(self, instance_name: str, handle: Any, step: ProvisioningStep, cause: Exception):
        self.instance_name = instance_name
        self.handle = handle
        self.step = step
        self.cause = cause
        super().__init__(
            f"Instance {instance_name!r} left partially configured: "
            f"step {int(step)} ({step.label}) failed: {cause}"
        )


class WorkloadType(Enum):
    """Workload classes with their own template shape."""

    DOMAIN_CONTROLLER = "DomainController"
    APPLICATION_SERVER = "ApplicationServer"
    DATABASE_SERVER = "DatabaseServer"
    WEB_SERVER = "WebServer"
    VDI = "VDI"
    CUSTOM = "Custom"

    @classmethod
    def parse(cls, value: "str | WorkloadType") -> "WorkloadType":
        """Resolve a workload type from its value or name, ignoring case and separators."""
        if isinstance(value, cls):
            return value
        wanted = re.sub(r"[\s_-]", "", str(value)).lower()
        for member in cls:
            if wanted in (member.value.lower(), member.name.replace("_", "").lower()):
                return member
        choices = ", ".join(member.value for member in cls)
        raise ValidationError("workload_type", f"unknown workload {value!r} (expected one of {choices})")


class DiskRole(Enum):
    """Purpose of a virtual disk."""

    OS = "OS"
    DATA = "Data"
    LOG = "Log"


def _require_int(field: str, value: Any, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field, f"expected an integer, got {value!r}")
    if value < minimum:
        qualifier = "positive" if minimum == 1 else f">= {minimum}"
        raise ValidationError(field, f"must be {qualifier}, got {value}")


def _require_bool(field: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ValidationError(field, f"expected true or false, got {value!r}")


@dataclass(frozen=True)
class TemplateSpec:
    """Hardware shape shared by every workload class.

    Instances are immutable and validated on construction, so
    ``dataclasses.replace`` doubles as the override-and-revalidate path.
    """

    workload_type: ClassVar[WorkloadType] = WorkloadType.CUSTOM
    positive_fields: ClassVar[Tuple[str, ...]] = ("cpu_count", "memory_mb", "storage_gb")

    cpu_count: int = 2
    memory_mb: int = 4096
    storage_gb: int = 80
    adapter_count: int = 1
    generation: int = 2
    dynamic_memory: bool = True
    secure_boot: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check hardware invariants, raising ValidationError naming the first bad field."""
        for name in self.positive_fields:
            _require_int(name, getattr(self, name), minimum=1)
        _require_int("adapter_count", self.adapter_count, minimum=1)
        if self.generation not in (1, 2) or isinstance(self.generation, bool):
            raise ValidationError("generation", f"must be 1 or 2, got {self.generation!r}")
        _require_bool("dynamic_memory", self.dynamic_memory)
        _require_bool("secure_boot", self.secure_boot)
        if self.secure_boot and self.generation != 2:
            raise ValidationError("secure_boot", "secure boot requires generation 2")

    def disk_layout(self) -> Tuple[Tuple[DiskRole, int], ...]:
        """Disks this template provisions, in attach order."""
        return ((DiskRole.OS, self.storage_gb),)

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(cls))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"workload_type": self.workload_type.value}
        data.update(dataclasses.asdict(self))
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TemplateSpec":
        """Rebuild the workload-specific template from its serialized form."""
        values = dict(data)
        workload = WorkloadType.parse(values.pop("workload_type", WorkloadType.CUSTOM.value))
        cls = TEMPLATE_TYPES[workload]
        unknown = sorted(set(values) - set(cls.field_names()))
        if unknown:
            raise ValidationError(unknown[0], f"not a field of {workload.value} templates")
        return cls(**values)


@dataclass(frozen=True)
class DomainControllerTemplate(TemplateSpec):
    workload_type: ClassVar[WorkloadType] = WorkloadType.DOMAIN_CONTROLLER


@dataclass(frozen=True)
class ApplicationServerTemplate(TemplateSpec):
    workload_type: ClassVar[WorkloadType] = WorkloadType.APPLICATION_SERVER


@dataclass(frozen=True)
class DatabaseServerTemplate(TemplateSpec):
    """Database servers carry separate data and log disks."""

    workload_type: ClassVar[WorkloadType] = WorkloadType.DATABASE_SERVER
    positive_fields: ClassVar[Tuple[str, ...]] = TemplateSpec.positive_fields + (
        "data_storage_gb",
        "log_storage_gb",
    )

    storage_gb: int = 120
    data_storage_gb: int = 500
    log_storage_gb: int = 100

    def disk_layout(self) -> Tuple[Tuple[DiskRole, int], ...]:
        return (
            (DiskRole.OS, self.storage_gb),
            (DiskRole.DATA, self.data_storage_gb),
            (DiskRole.LOG, self.log_storage_gb),
        )


@dataclass(frozen=True)
class WebServerTemplate(TemplateSpec):
    workload_type: ClassVar[WorkloadType] = WorkloadType.WEB_SERVER


@dataclass(frozen=True)
class VDITemplate(TemplateSpec):
    """Desktops may request the enhanced session integration service."""

    workload_type: ClassVar[WorkloadType] = WorkloadType.VDI

    enhanced_session: bool = True

    def validate(self) -> None:
        super().validate()
        _require_bool("enhanced_session", self.enhanced_session)


@dataclass(frozen=True)
class CustomTemplate(TemplateSpec):
    workload_type: ClassVar[WorkloadType] = WorkloadType.CUSTOM


TEMPLATE_TYPES: Dict[WorkloadType, type] = {
    WorkloadType.DOMAIN_CONTROLLER: DomainControllerTemplate,
    WorkloadType.APPLICATION_SERVER: ApplicationServerTemplate,
    WorkloadType.DATABASE_SERVER: DatabaseServerTemplate,
    WorkloadType.WEB_SERVER: WebServerTemplate,
    WorkloadType.VDI: VDITemplate,
    WorkloadType.CUSTOM: CustomTemplate,
}


@dataclass(frozen=True)
class TemplateRecord:
    """A persisted, named and versioned copy of a template."""

    template_id: str
    name: str
    created_at: datetime
    engine_version: str
    spec: TemplateSpec

    @property
    def workload_type(self) -> WorkloadType:
        return self.spec.workload_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.template_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "engine_version": self.engine_version,
            "spec": self.spec.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateRecord":
        return cls(
            template_id=str(data["id"]),
            name=str(data["name"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            engine_version=str(data["engine_version"]),
            spec=TemplateSpec.from_dict(data["spec"]),
        )
