#!/usr/bin/env python3
"""
Staged Windows host deployment that survives restarts.

Workflow:
1. Configure networking and rename the computer, then restart
2. Install roles and join the domain, then restart
3. Enable sharing, firewall rules, security and GUI settings

Each restart is preceded by a stage checkpoint, so relaunching the tool
after the host comes back continues with the next stage. The configuration
travels in the checkpoint snapshot and does not need to be supplied again.
"""

import ipaddress
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import SecretStr

from winlab.models import NotFound, ValidationError
from winlab.powershell import PowerShellRunner, quote
from winlab.stages import StageController

logger = logging.getLogger(__name__)

# Windows features installed for each role key
ROLE_FEATURES: Dict[str, List[str]] = {
    "domain-controller": ["AD-Domain-Services", "DNS", "GPMC"],
    "dns": ["DNS"],
    "dhcp": ["DHCP"],
    "file-server": ["FS-FileServer", "FS-Resource-Manager"],
    "web-server": ["Web-Server", "Web-Mgmt-Console"],
    "hyper-v": ["Hyper-V", "Hyper-V-PowerShell"],
}

_COMPUTER_NAME = re.compile(r"^[A-Za-z0-9-]{1,15}$")

# Snapshot flag set when the operator declined a restart the next stage depends on
RESTART_PENDING = "restart_pending"

# IE Enhanced Security Configuration components (administrators, users)
_IE_ESC_KEYS = (
    r"HKLM:\SOFTWARE\Microsoft\Active Setup\Installed Components\{A509B1A7-37EF-4b3f-8CFC-4F3A74704073}",
    r"HKLM:\SOFTWARE\Microsoft\Active Setup\Installed Components\{A509B1A8-37EF-4b3f-8CFC-4F3A74704073}",
)


class HostStage(IntEnum):
    """Stages of the host deployment."""

    NETWORK_AND_IDENTITY = 1
    ROLES_AND_DOMAIN = 2
    FINALIZE = 3


class WorkflowOutcome(Enum):
    """How a workflow invocation ended."""

    COMPLETED = "completed"
    RESTARTING = "restarting"
    PAUSED = "paused"


# Checkpoint action recorded for each stage that ends in a restart
_RESTART_ACTIONS = {
    HostStage.NETWORK_AND_IDENTITY: "rename-computer",
    HostStage.ROLES_AND_DOMAIN: "join-domain",
}


@dataclass
class HostDeploymentConfig:
    """Desired state of a Windows host."""

    computer_name: str
    interface_alias: str = "Ethernet"
    ipv4_address: Optional[str] = None
    prefix_length: int = 24
    default_gateway: Optional[str] = None
    dns_servers: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    domain: Optional[str] = None
    ou_path: Optional[str] = None
    file_sharing: bool = True
    remote_desktop: bool = True
    allow_ping: bool = True
    disable_ie_esc: bool = True
    show_file_extensions: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not self.computer_name or not _COMPUTER_NAME.match(self.computer_name):
            raise ValidationError(
                "computer_name", f"must be 1-15 letters, digits or hyphens, got {self.computer_name!r}"
            )
        for name in ("ipv4_address", "default_gateway"):
            value = getattr(self, name)
            if value is not None:
                _require_ipv4(name, value)
        for server in self.dns_servers:
            _require_ipv4("dns_servers", server)
        if isinstance(self.prefix_length, bool) or not isinstance(self.prefix_length, int) or not (
            0 < self.prefix_length <= 32
        ):
            raise ValidationError("prefix_length", f"must be between 1 and 32, got {self.prefix_length!r}")
        unknown = [role for role in self.roles if role not in ROLE_FEATURES]
        if unknown:
            raise ValidationError("roles", f"unknown role {unknown[0]!r} (known: {', '.join(ROLE_FEATURES)})")

    @property
    def features(self) -> List[str]:
        """Windows feature names for the configured roles, without duplicates."""
        features: List[str] = []
        for role in self.roles:
            for feature in ROLE_FEATURES[role]:
                if feature not in features:
                    features.append(feature)
        return features

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostDeploymentConfig":
        if not isinstance(data, dict):
            raise ValidationError("config", "expected a mapping of settings")
        known = {name for name in cls.__dataclass_fields__}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(unknown[0], "unknown host setting")
        if "computer_name" not in data:
            raise ValidationError("computer_name", "is required")
        return cls(**data)


def _require_ipv4(field_name: str, value: str) -> None:
    try:
        ipaddress.IPv4Address(value)
    except (ipaddress.AddressValueError, ValueError) as e:
        raise ValidationError(field_name, f"invalid IPv4 address {value!r}") from e


def load_host_config(path: Path) -> HostDeploymentConfig:
    """
    Load a host deployment config from YAML.

    Raises:
        NotFound: If the file does not exist
        ValidationError: If the YAML is malformed or a setting is invalid
    """
    path = Path(path)
    if not path.exists():
        raise NotFound(str(path))
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError("config", f"{path} is not valid YAML: {e}") from e
    return HostDeploymentConfig.from_dict(data)


class HostActions(ABC):
    """Host-level operations the deployment workflow performs."""

    @abstractmethod
    def configure_network(self, config: HostDeploymentConfig) -> None:
        ...

    @abstractmethod
    def rename_computer(self, name: str) -> None:
        ...

    @abstractmethod
    def install_features(self, features: List[str]) -> None:
        ...

    @abstractmethod
    def join_domain(self, domain: str, ou_path: Optional[str]) -> None:
        ...

    @abstractmethod
    def enable_file_sharing(self) -> None:
        ...

    @abstractmethod
    def configure_firewall(self, allow_ping: bool, remote_desktop: bool) -> None:
        ...

    @abstractmethod
    def disable_ie_enhanced_security(self) -> None:
        ...

    @abstractmethod
    def show_file_extensions(self) -> None:
        ...

    @abstractmethod
    def restart(self) -> None:
        ...


class PowerShellHostActions(HostActions):
    """Host actions implemented with Windows Server cmdlets."""

    def __init__(
        self,
        runner: PowerShellRunner,
        domain_user: Optional[str] = None,
        domain_password: Optional[SecretStr] = None,
    ):
        self.runner = runner
        self.domain_user = domain_user
        self.domain_password = domain_password

    @classmethod
    def from_settings(cls, settings: Any) -> "PowerShellHostActions":
        return cls(PowerShellRunner.from_settings(settings), settings.domain_user, settings.domain_password)

    def configure_network(self, config: HostDeploymentConfig) -> None:
        alias = quote(config.interface_alias)
        if config.ipv4_address:
            script = (
                f"Get-NetIPAddress -InterfaceAlias {alias} -AddressFamily IPv4 -ErrorAction SilentlyContinue"
                " | Remove-NetIPAddress -Confirm:$false\n"
                f"New-NetIPAddress -InterfaceAlias {alias} -IPAddress {quote(config.ipv4_address)} "
                f"-PrefixLength {config.prefix_length}"
            )
            if config.default_gateway:
                script += f" -DefaultGateway {quote(config.default_gateway)}"
            self.runner.run(script + " | Out-Null")
            logger.info(f"Set {config.interface_alias} to {config.ipv4_address}/{config.prefix_length}")
        if config.dns_servers:
            servers = ",".join(quote(server) for server in config.dns_servers)
            self.runner.run(f"Set-DnsClientServerAddress -InterfaceAlias {alias} -ServerAddresses {servers}")
            logger.info(f"Set DNS servers on {config.interface_alias}: {', '.join(config.dns_servers)}")

    def rename_computer(self, name: str) -> None:
        self.runner.run(f"if ($env:COMPUTERNAME -ne {quote(name)}) {{ Rename-Computer -NewName {quote(name)} -Force }}")

    def install_features(self, features: List[str]) -> None:
        names = ",".join(quote(feature) for feature in features)
        self.runner.run(f"Install-WindowsFeature -Name {names} -IncludeManagementTools | Out-Null")

    def join_domain(self, domain: str, ou_path: Optional[str]) -> None:
        if not self.domain_user or self.domain_password is None:
            raise ValidationError("domain_user", "domain join requires WINLAB_DOMAIN_USER and WINLAB_DOMAIN_PASSWORD")
        script = (
            f"$password = ConvertTo-SecureString {quote(self.domain_password.get_secret_value())} "
            "-AsPlainText -Force\n"
            "$credential = New-Object System.Management.Automation.PSCredential("
            f"{quote(self.domain_user)}, $password)\n"
            f"Add-Computer -DomainName {quote(domain)} -Credential $credential -Force"
        )
        if ou_path:
            script += f" -OUPath {quote(ou_path)}"
        self.runner.run(script)

    def enable_file_sharing(self) -> None:
        self.runner.run("Set-NetFirewallRule -DisplayGroup 'File And Printer Sharing' -Enabled True -Profile Any")

    def configure_firewall(self, allow_ping: bool, remote_desktop: bool) -> None:
        if allow_ping:
            self.runner.run("Enable-NetFirewallRule -Name 'FPS-ICMP4-ERQ-In'")
        if remote_desktop:
            self.runner.run(
                "Set-ItemProperty -Path 'HKLM:\\System\\CurrentControlSet\\Control\\Terminal Server' "
                "-Name fDenyTSConnections -Value 0\n"
                "Enable-NetFirewallRule -DisplayGroup 'Remote Desktop'"
            )

    def disable_ie_enhanced_security(self) -> None:
        script = "\n".join(f"Set-ItemProperty -Path {quote(key)} -Name IsInstalled -Value 0" for key in _IE_ESC_KEYS)
        self.runner.run(script)

    def show_file_extensions(self) -> None:
        self.runner.run(
            "Set-ItemProperty -Path 'HKCU:\\Software\\Microsoft\\Windows\\CurrentVersion\\Explorer\\Advanced' "
            "-Name HideFileExt -Value 0"
        )

    def restart(self) -> None:
        self.runner.run("Restart-Computer -Force")


class HostDeploymentWorkflow:
    """Runs the host deployment stages, checkpointing before each restart."""

    def __init__(
        self,
        stages: StageController,
        actions: HostActions,
        config: Optional[HostDeploymentConfig] = None,
    ):
        """
        Initialize the workflow.

        Args:
            stages: Stage controller holding the checkpoint
            actions: Host action backend
            config: Desired host state; taken from the checkpoint when omitted
        """
        self.stages = stages
        self.actions = actions
        self.config = config

    def _resolve_config(self) -> HostDeploymentConfig:
        if self.config is not None:
            return self.config
        snapshot = self.stages.snapshot()
        if "config" not in snapshot:
            raise ValidationError("config", "no configuration given and no deployment in progress")
        return HostDeploymentConfig.from_dict(snapshot["config"])

    def run(self, confirm_restart: Callable[[str], bool]) -> WorkflowOutcome:
        """
        Run from the recorded stage until a restart or the end of the workflow.

        Args:
            confirm_restart: Asked before each restart with the reason; returning
                False pauses the workflow at its checkpoint

        Returns:
            The outcome of this invocation
        """
        stage = self.stages.resume()
        if stage > HostStage.FINALIZE:
            raise ValidationError("stage", f"unknown host deployment stage {stage}")
        restart_pending = bool(self.stages.snapshot().get(RESTART_PENDING))
        config = self._resolve_config()
        snapshot = {"config": config.to_dict()}
        logger.info(f"Host deployment for {config.computer_name} at stage {HostStage(stage).name}")

        if restart_pending and stage > HostStage.NETWORK_AND_IDENTITY:
            completed = HostStage(stage - 1)
            logger.warning(f"Restart after stage {completed.name} still pending; waiting before {HostStage(stage).name}")
            return self._restart(confirm_restart, completed, config, snapshot)

        if stage == HostStage.NETWORK_AND_IDENTITY:
            self.actions.configure_network(config)
            self.actions.rename_computer(config.computer_name)
            return self._restart(confirm_restart, HostStage.NETWORK_AND_IDENTITY, config, snapshot)

        if stage == HostStage.ROLES_AND_DOMAIN:
            if config.features:
                self.actions.install_features(config.features)
                logger.info(f"Installed features: {', '.join(config.features)}")
            if config.domain:
                self.actions.join_domain(config.domain, config.ou_path)
                logger.info(f"Joined domain {config.domain}")
            return self._restart(confirm_restart, HostStage.ROLES_AND_DOMAIN, config, snapshot)

        if config.file_sharing:
            self.actions.enable_file_sharing()
        self.actions.configure_firewall(config.allow_ping, config.remote_desktop)
        if config.disable_ie_esc:
            self.actions.disable_ie_enhanced_security()
        if config.show_file_extensions:
            self.actions.show_file_extensions()
        self.stages.complete(snapshot)
        return WorkflowOutcome.COMPLETED

    def _restart(
        self,
        confirm_restart: Callable[[str], bool],
        completed: HostStage,
        config: HostDeploymentConfig,
        snapshot: Dict[str, Any],
    ) -> WorkflowOutcome:
        """Checkpoint stage ``completed`` and ask for the restart it needs; a refusal is remembered."""
        if completed == HostStage.NETWORK_AND_IDENTITY:
            reason = f"apply new computer name {config.computer_name}"
        else:
            reason = "finish role installation and domain join"
        action = _RESTART_ACTIONS[completed]
        self.stages.advance(completed, action, snapshot)

        if not confirm_restart(reason):
            self.stages.advance(completed, action, dict(snapshot, **{RESTART_PENDING: True}))
            logger.info("Restart declined; deployment paused until the host has restarted")
            return WorkflowOutcome.PAUSED
        logger.info(f"Restarting host to {reason}")
        self.actions.restart()
        return WorkflowOutcome.RESTARTING
