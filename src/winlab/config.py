"""Configuration management for winlab."""

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from winlab import __version__


class Settings(BaseSettings):
    """Settings loaded from WINLAB_* environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_prefix="WINLAB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Persistence
    template_dir: Path = Field(
        default=Path.home() / ".winlab" / "templates", description="Directory for saved templates"
    )
    stage_file: Path = Field(
        default=Path.home() / ".winlab" / "deployment_stage.json",
        description="Deployment stage record location",
    )
    log_dir: Path = Field(default=Path.home() / ".winlab" / "logs", description="Directory for run logs")
    engine_version: str = Field(default=__version__, description="Version tag written into template records")

    # Hyper-V host
    hyperv_host: Optional[str] = Field(
        default=None, description="Remote Hyper-V host reached over SSH; None runs PowerShell locally"
    )
    ssh_user: str = Field(default="Administrator", description="SSH user for the Hyper-V host")
    ssh_key_path: Path = Field(default=Path("~/.ssh/id_rsa"), description="SSH private key for the Hyper-V host")
    command_timeout: int = Field(default=300, description="Seconds to wait for a PowerShell command")
    vm_root: str = Field(default=r"C:\Hyper-V\VMs", description="Hyper-V virtual machine configuration path")
    vhd_root: str = Field(default=r"C:\Hyper-V\Disks", description="Directory for new virtual hard disks")
    default_network: str = Field(default="External", description="Virtual switch used when none is given")
    enhanced_session_service: str = Field(
        default="Guest Service Interface", description="Integration service enabled for enhanced session"
    )

    # Domain join
    domain_user: Optional[str] = Field(default=None, description="Account used for domain join")
    domain_password: Optional[SecretStr] = Field(default=None, description="Password for the domain join account")

    @property
    def remote(self) -> bool:
        """Check if commands target a remote Hyper-V host."""
        return bool(self.hyperv_host)


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
