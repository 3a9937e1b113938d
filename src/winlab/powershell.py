"""
Run PowerShell scripts locally or on a remote Windows host over SSH.
"""

import base64
import json
import logging
import os
import subprocess
from typing import Any, Optional

import paramiko

from winlab.models import CommandError

logger = logging.getLogger(__name__)

# Make cmdlet errors terminate the script with a non-zero exit code
_PREAMBLE = "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'\n"


def quote(value: Any) -> str:
    """Render a value as a single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def encode_command(script: str) -> str:
    """Encode a script for ``powershell -EncodedCommand`` (UTF-16LE base64)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


class PowerShellRunner:
    """Executes PowerShell scripts and returns their standard output."""

    def __init__(
        self,
        host: Optional[str] = None,
        user: str = "Administrator",
        key_path: Optional[str] = None,
        timeout: int = 300,
    ):
        """
        Initialize the runner.

        Args:
            host: Remote host reached over SSH; None runs powershell locally
            user: SSH user name
            key_path: SSH private key file
            timeout: Seconds to wait for a command
        """
        self.host = host
        self.user = user
        self.key_path = key_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Any) -> "PowerShellRunner":
        return cls(
            host=settings.hyperv_host,
            user=settings.ssh_user,
            key_path=str(settings.ssh_key_path),
            timeout=settings.command_timeout,
        )

    def run(self, script: str) -> str:
        """
        Run a script and return its trimmed standard output.

        Raises:
            CommandError: If the script exits non-zero or cannot be launched
        """
        full_script = _PREAMBLE + script
        logger.debug(f"PowerShell [{self.host or 'local'}]: {script}")
        if self.host:
            return self._run_ssh(script, full_script)
        return self._run_local(script, full_script)

    def run_json(self, script: str) -> Any:
        """Run a script piped through ConvertTo-Json and parse the result."""
        output = self.run(f"{script} | ConvertTo-Json -Depth 4 -Compress")
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise CommandError(script, 0, f"invalid JSON output: {e}") from e

    def _run_local(self, script: str, full_script: str) -> str:
        command = ["powershell", "-NoProfile", "-NonInteractive", "-EncodedCommand", encode_command(full_script)]
        try:
            result = subprocess.run(
                command, capture_output=True, text=True, errors="replace", timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(script, None, f"timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise CommandError(script, None, "powershell executable not found") from e

        if result.returncode != 0:
            raise CommandError(script, result.returncode, result.stderr.strip())
        return result.stdout.strip()

    def _run_ssh(self, script: str, full_script: str) -> str:
        key_filename = os.path.expanduser(self.key_path) if self.key_path else None
        command = f"powershell -NoProfile -NonInteractive -EncodedCommand {encode_command(full_script)}"

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(hostname=self.host, username=self.user, key_filename=key_filename, timeout=30)
            stdin, stdout, stderr = ssh.exec_command(command, timeout=self.timeout)
            output = stdout.read().decode("utf-8", errors="replace").strip()
            error = stderr.read().decode("utf-8", errors="replace").strip()
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(script, None, f"SSH to {self.host} failed: {e}") from e
        finally:
            ssh.close()

        if exit_code != 0:
            raise CommandError(script, exit_code, error)
        return output
