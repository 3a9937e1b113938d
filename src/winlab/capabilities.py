"""Hypervisor capability surface consumed by the provisioning executor."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Set

from winlab.planner import MemoryPolicy


@dataclass(frozen=True)
class InstanceHandle:
    """Reference to a created virtual machine."""

    name: str
    instance_id: Optional[str] = None


@dataclass(frozen=True)
class DiskRef:
    """Reference to a created virtual disk."""

    path: str
    size_bytes: int


class HypervisorCapabilities(ABC):
    """
    Operations the provisioning engine needs from a hypervisor.

    Implementations raise CapabilityFailure when an operation fails.
    """

    @abstractmethod
    def list_instance_names(self) -> Set[str]:
        ...

    @abstractmethod
    def list_networks(self) -> List[str]:
        ...

    @abstractmethod
    def create_instance(
        self, name: str, generation: int, initial_memory_bytes: int, network: str
    ) -> InstanceHandle:
        ...

    @abstractmethod
    def set_processor_count(self, handle: InstanceHandle, count: int) -> None:
        ...

    @abstractmethod
    def set_memory_policy(self, handle: InstanceHandle, policy: MemoryPolicy) -> None:
        ...

    @abstractmethod
    def set_firmware(self, handle: InstanceHandle, secure_boot: bool) -> None:
        ...

    @abstractmethod
    def create_disk(self, name: str, size_bytes: int) -> DiskRef:
        ...

    @abstractmethod
    def attach_disk(self, handle: InstanceHandle, disk: DiskRef) -> None:
        ...

    @abstractmethod
    def add_network_adapter(self, handle: InstanceHandle, network: str) -> None:
        ...

    @abstractmethod
    def enable_integration_service(self, handle: InstanceHandle, service_name: str) -> None:
        ...

    @abstractmethod
    def start_instance(self, handle: InstanceHandle) -> None:
        ...
