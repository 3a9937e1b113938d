#!/usr/bin/env python3
"""
src/winlab/hyperv.py

Hyper-V implementation of the hypervisor capabilities, driven through the
Hyper-V PowerShell module.
"""

import logging
from typing import Any, List, Set

from winlab.capabilities import DiskRef, HypervisorCapabilities, InstanceHandle
from winlab.models import CapabilityFailure, CommandError
from winlab.planner import MemoryPolicy
from winlab.powershell import PowerShellRunner, quote

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[str]:
    """ConvertTo-Json returns a bare value for one item and a list for many."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


class HyperVHost(HypervisorCapabilities):
    """Issues Hyper-V cmdlets for each capability call."""

    def __init__(self, runner: PowerShellRunner, vm_root: str, vhd_root: str):
        """
        Initialize the Hyper-V backend.

        Args:
            runner: PowerShell runner bound to the Hyper-V host
            vm_root: Path for virtual machine configuration files
            vhd_root: Directory new VHDX files are created in
        """
        self.runner = runner
        self.vm_root = vm_root
        self.vhd_root = vhd_root.rstrip("\\")

    @classmethod
    def from_settings(cls, settings: Any) -> "HyperVHost":
        return cls(PowerShellRunner.from_settings(settings), settings.vm_root, settings.vhd_root)

    def _call(self, operation: str, script: str) -> str:
        try:
            return self.runner.run(script)
        except CommandError as e:
            logger.error(f"Hyper-V {operation} failed: {e.stderr or e}")
            raise CapabilityFailure(operation, e.stderr or str(e)) from e

    def _query(self, operation: str, script: str) -> Any:
        try:
            return self.runner.run_json(script)
        except CommandError as e:
            raise CapabilityFailure(operation, e.stderr or str(e)) from e

    def list_instance_names(self) -> Set[str]:
        return set(_as_list(self._query("list instances", "Get-VM | Select-Object -ExpandProperty Name")))

    def list_networks(self) -> List[str]:
        return _as_list(self._query("list networks", "Get-VMSwitch | Select-Object -ExpandProperty Name"))

    def create_instance(
        self, name: str, generation: int, initial_memory_bytes: int, network: str
    ) -> InstanceHandle:
        script = (
            f"$vm = New-VM -Name {quote(name)} -Generation {generation} "
            f"-MemoryStartupBytes {initial_memory_bytes} -SwitchName {quote(network)} "
            f"-Path {quote(self.vm_root)} -NoVHD\n"
            "$vm.VMId.Guid"
        )
        instance_id = self._call("create instance", script)
        logger.info(f"Created VM {name!r} ({instance_id})")
        return InstanceHandle(name=name, instance_id=instance_id or None)

    def set_processor_count(self, handle: InstanceHandle, count: int) -> None:
        self._call("set processor count", f"Set-VMProcessor -VMName {quote(handle.name)} -Count {count}")

    def set_memory_policy(self, handle: InstanceHandle, policy: MemoryPolicy) -> None:
        if policy.dynamic:
            script = (
                f"Set-VMMemory -VMName {quote(handle.name)} -DynamicMemoryEnabled $true "
                f"-MinimumBytes {policy.minimum_bytes} -StartupBytes {policy.startup_bytes} "
                f"-MaximumBytes {policy.maximum_bytes}"
            )
        else:
            script = (
                f"Set-VMMemory -VMName {quote(handle.name)} -DynamicMemoryEnabled $false "
                f"-StartupBytes {policy.startup_bytes}"
            )
        self._call("set memory policy", script)

    def set_firmware(self, handle: InstanceHandle, secure_boot: bool) -> None:
        state = "On" if secure_boot else "Off"
        self._call("set firmware", f"Set-VMFirmware -VMName {quote(handle.name)} -EnableSecureBoot {state}")

    def create_disk(self, name: str, size_bytes: int) -> DiskRef:
        path = f"{self.vhd_root}\\{name}.vhdx"
        self._call("create disk", f"New-VHD -Path {quote(path)} -SizeBytes {size_bytes} -Dynamic | Out-Null")
        return DiskRef(path=path, size_bytes=size_bytes)

    def attach_disk(self, handle: InstanceHandle, disk: DiskRef) -> None:
        self._call("attach disk", f"Add-VMHardDiskDrive -VMName {quote(handle.name)} -Path {quote(disk.path)}")

    def add_network_adapter(self, handle: InstanceHandle, network: str) -> None:
        self._call(
            "add network adapter",
            f"Add-VMNetworkAdapter -VMName {quote(handle.name)} -SwitchName {quote(network)}",
        )

    def enable_integration_service(self, handle: InstanceHandle, service_name: str) -> None:
        self._call(
            "enable integration service",
            f"Enable-VMIntegrationService -VMName {quote(handle.name)} -Name {quote(service_name)}",
        )

    def start_instance(self, handle: InstanceHandle) -> None:
        self._call("start instance", f"Start-VM -Name {quote(handle.name)}")
        logger.info(f"Started VM {handle.name!r}")
