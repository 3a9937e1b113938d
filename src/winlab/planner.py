"""
Turns a template plus per-instance choices into a concrete provisioning plan.

Planning is a pure computation: the caller supplies the existing instance
names and the available networks (both read from the hypervisor), so the
same inputs always yield the same plan.
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from winlab.models import (
    DiskRole,
    NameCollision,
    NoNetworkTarget,
    TemplateSpec,
    ValidationError,
    VDITemplate,
    WorkloadType,
)

MB = 1024 * 1024
GB = 1024 * MB

MIN_DYNAMIC_MEMORY_MB = 512


@dataclass(frozen=True)
class MemoryPolicy:
    """Static allocation, or a dynamic range the hypervisor may adjust within."""

    startup_mb: int
    dynamic: bool = False
    minimum_mb: Optional[int] = None
    maximum_mb: Optional[int] = None

    @classmethod
    def for_template(cls, memory_mb: int, dynamic: bool) -> "MemoryPolicy":
        """Dynamic bounds are max(512, M/2) .. 2M; static keeps M."""
        if not dynamic:
            return cls(startup_mb=memory_mb)
        return cls(
            startup_mb=memory_mb,
            dynamic=True,
            minimum_mb=max(MIN_DYNAMIC_MEMORY_MB, memory_mb // 2),
            maximum_mb=memory_mb * 2,
        )

    @property
    def startup_bytes(self) -> int:
        return self.startup_mb * MB

    @property
    def minimum_bytes(self) -> Optional[int]:
        return self.minimum_mb * MB if self.minimum_mb is not None else None

    @property
    def maximum_bytes(self) -> Optional[int]:
        return self.maximum_mb * MB if self.maximum_mb is not None else None

    def describe(self) -> str:
        if self.dynamic:
            return f"{self.startup_mb} MB dynamic ({self.minimum_mb}-{self.maximum_mb} MB)"
        return f"{self.startup_mb} MB static"


@dataclass(frozen=True)
class DiskRequest:
    """A virtual disk to create and attach."""

    role: DiskRole
    size_gb: int

    @property
    def size_bytes(self) -> int:
        return self.size_gb * GB

    def file_stem(self, instance_name: str) -> str:
        return f"{instance_name}-{self.role.value}"


@dataclass(frozen=True)
class ProvisioningPlan:
    """A validated, single-use resource request for one instance."""

    instance_name: str
    template_ref: str
    workload_type: WorkloadType
    cpu_count: int
    memory: MemoryPolicy
    disks: Tuple[DiskRequest, ...]
    adapter_count: int
    network: str
    generation: int
    secure_boot: bool
    enhanced_session: bool = False

    @property
    def additional_adapters(self) -> int:
        """Adapters beyond the one bound when the instance is created."""
        return self.adapter_count - 1

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["workload_type"] = self.workload_type.value
        data["disks"] = [{"role": disk.role.value, "size_gb": disk.size_gb} for disk in self.disks]
        return data


def plan(
    spec: TemplateSpec,
    instance_name: str,
    network_target: str,
    existing_names: Iterable[str],
    available_networks: Iterable[str],
    template_ref: Optional[str] = None,
) -> ProvisioningPlan:
    """
    Resolve a template into a plan for one instance.

    Args:
        spec: Template to realise
        instance_name: Name of the new instance
        network_target: Virtual switch for the adapters
        existing_names: Instance names already present on the host
        available_networks: Virtual switches present on the host
        template_ref: Saved template id or name, recorded on the plan

    Raises:
        ValidationError: If the instance name is blank
        NameCollision: If the name is already taken (case-insensitive)
        NoNetworkTarget: If the network is not available
    """
    name = (instance_name or "").strip()
    if not name:
        raise ValidationError("instance_name", "instance name is required")

    taken = {existing.lower() for existing in existing_names}
    if name.lower() in taken:
        raise NameCollision(name)

    networks = tuple(available_networks)
    if network_target not in networks:
        raise NoNetworkTarget(network_target, networks)

    disks = tuple(DiskRequest(role=role, size_gb=size) for role, size in spec.disk_layout())
    enhanced_session = isinstance(spec, VDITemplate) and spec.enhanced_session

    return ProvisioningPlan(
        instance_name=name,
        template_ref=template_ref or spec.workload_type.value,
        workload_type=spec.workload_type,
        cpu_count=spec.cpu_count,
        memory=MemoryPolicy.for_template(spec.memory_mb, spec.dynamic_memory),
        disks=disks,
        adapter_count=spec.adapter_count,
        network=network_target,
        generation=spec.generation,
        secure_boot=spec.secure_boot and spec.generation == 2,
        enhanced_session=enhanced_session,
    )
