"""
Realises a provisioning plan through ordered hypervisor capability calls.

Steps run strictly in sequence and are never retried or rolled back. A
failure after the instance exists stops execution and is returned as a
PartialProvisioning on the result so the caller can decide what to do with
the half-configured instance.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

from winlab.capabilities import DiskRef, HypervisorCapabilities, InstanceHandle
from winlab.models import CapabilityFailure, NameCollision, PartialProvisioning, ProvisioningStep
from winlab.planner import ProvisioningPlan

logger = logging.getLogger(__name__)

DEFAULT_INTEGRATION_SERVICE = "Guest Service Interface"


@dataclass
class ExecutionResult:
    """Outcome of executing a plan."""

    plan: ProvisioningPlan
    handle: Optional[InstanceHandle] = None
    completed_steps: List[ProvisioningStep] = field(default_factory=list)
    skipped_steps: List[ProvisioningStep] = field(default_factory=list)
    created_disks: List[DiskRef] = field(default_factory=list)
    disks: List[DiskRef] = field(default_factory=list)
    started: bool = False
    partial: Optional[PartialProvisioning] = None

    @property
    def ok(self) -> bool:
        return self.partial is None

    @property
    def not_attempted(self) -> List[ProvisioningStep]:
        """Steps never reached because an earlier step failed."""
        if self.partial is None:
            return []
        return [step for step in ProvisioningStep if step > self.partial.step]

    @property
    def unattached_disks(self) -> List[DiskRef]:
        """Disks that exist on the host but were never attached to the instance."""
        return [disk for disk in self.created_disks if disk not in self.disks]

    def raise_for_partial(self) -> None:
        if self.partial is not None:
            raise self.partial


class ProvisioningExecutor:
    """Runs the capability sequence for a plan against one hypervisor."""

    def __init__(
        self,
        capabilities: HypervisorCapabilities,
        integration_service: str = DEFAULT_INTEGRATION_SERVICE,
    ):
        self.capabilities = capabilities
        self.integration_service = integration_service

    def execute(self, plan: ProvisioningPlan, start: bool = False) -> ExecutionResult:
        """
        Create and configure the instance described by a plan.

        Args:
            plan: Plan produced by the planner
            start: Start the instance once configured

        Returns:
            ExecutionResult; ``partial`` is set if a step after creation failed

        Raises:
            NameCollision: If an instance with the plan's name already exists
            CapabilityFailure: If the instance itself cannot be created
        """
        existing = {name.lower() for name in self.capabilities.list_instance_names()}
        if plan.instance_name.lower() in existing:
            raise NameCollision(plan.instance_name)

        result = ExecutionResult(plan=plan)
        logger.info(
            f"Provisioning {plan.instance_name!r} from {plan.template_ref}: "
            f"{plan.cpu_count} CPU, {plan.memory.describe()}, {len(plan.disks)} disk(s), "
            f"{plan.adapter_count} adapter(s) on {plan.network!r}"
        )

        step = ProvisioningStep.CREATE_INSTANCE
        try:
            handle = self.capabilities.create_instance(
                plan.instance_name, plan.generation, plan.memory.startup_bytes, plan.network
            )
        except CapabilityFailure as e:
            logger.error(f"[{plan.instance_name}] step {int(step)} ({step.label}) failed: {e}")
            raise
        result.handle = handle
        result.completed_steps.append(step)

        for step, action in self._configuration_steps(plan, handle, start, result):
            if action is None:
                result.skipped_steps.append(step)
                continue
            try:
                action()
            except CapabilityFailure as e:
                result.partial = PartialProvisioning(plan.instance_name, handle, step, e)
                logger.warning(
                    f"[{plan.instance_name}] step {int(step)} ({step.label}) failed, "
                    f"instance left partially configured: {e}"
                )
                return result
            result.completed_steps.append(step)
            logger.debug(f"[{plan.instance_name}] step {int(step)} ({step.label}) done")

        logger.info(f"Provisioned {plan.instance_name!r}" + (" and started it" if result.started else ""))
        return result

    def _configuration_steps(
        self, plan: ProvisioningPlan, handle: InstanceHandle, start: bool, result: ExecutionResult
    ) -> Iterator[Tuple[ProvisioningStep, Optional[Callable[[], None]]]]:
        """Steps 2-8 in order; a None action means the step does not apply to this plan."""
        caps = self.capabilities

        yield ProvisioningStep.SET_PROCESSOR, lambda: caps.set_processor_count(handle, plan.cpu_count)
        yield ProvisioningStep.SET_MEMORY, lambda: caps.set_memory_policy(handle, plan.memory)

        if plan.generation == 2:
            yield ProvisioningStep.SET_FIRMWARE, lambda: caps.set_firmware(handle, plan.secure_boot)
        else:
            yield ProvisioningStep.SET_FIRMWARE, None

        def attach_disks() -> None:
            for disk in plan.disks:
                ref = caps.create_disk(disk.file_stem(plan.instance_name), disk.size_bytes)
                result.created_disks.append(ref)
                caps.attach_disk(handle, ref)
                result.disks.append(ref)

        yield ProvisioningStep.ATTACH_DISKS, attach_disks

        def add_adapters() -> None:
            for _ in range(plan.additional_adapters):
                caps.add_network_adapter(handle, plan.network)

        yield ProvisioningStep.ADD_ADAPTERS, add_adapters if plan.additional_adapters > 0 else None

        if plan.enhanced_session:
            yield ProvisioningStep.ENABLE_INTEGRATION, lambda: caps.enable_integration_service(
                handle, self.integration_service
            )
        else:
            yield ProvisioningStep.ENABLE_INTEGRATION, None

        def start_instance() -> None:
            caps.start_instance(handle)
            result.started = True

        yield ProvisioningStep.START_INSTANCE, start_instance if start else None
