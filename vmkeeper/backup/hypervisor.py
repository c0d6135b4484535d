"""
Hypervisor handlers for enumerating and exporting virtual machines.

Supports:
- HyperVHypervisor: Hyper-V through PowerShell (Get-VM / Export-VM)
"""

import os
import json
from dataclasses import dataclass
from typing import List

from .tools import run_command, ToolError


class HypervisorError(Exception):
    """Raised when listing or exporting virtual machines fails."""
    pass


@dataclass(frozen=True)
class VirtualMachine:
    id: str
    name: str
    state: str

    @property
    def is_running(self) -> bool:
        return self.state.lower() == 'running'


class Hypervisor:
    """Interface for hypervisor handlers."""

    def list_vms(self) -> List[VirtualMachine]:
        raise NotImplementedError

    def export_vm(self, vm_id: str, dest_path: str):
        raise NotImplementedError


class HyperVHypervisor(Hypervisor):
    """
    Handler for Hyper-V hosts.

    Runs PowerShell cmdlets and parses their JSON output.
    """

    LIST_SCRIPT = (
        "Get-VM | Select-Object "
        "@{Name='Id';Expression={$_.Id.ToString()}}, Name, "
        "@{Name='State';Expression={$_.State.ToString()}} "
        "| ConvertTo-Json -Compress"
    )

    def __init__(self, powershell: str = 'powershell.exe'):
        """
        Initialize Hyper-V handler.

        Args:
            powershell: PowerShell executable
        """
        self.powershell = powershell

    def _run(self, script: str):
        cmd = [self.powershell, '-NoProfile', '-NonInteractive', '-Command', script]
        try:
            return run_command(cmd)
        except ToolError as e:
            raise HypervisorError(str(e)) from e

    def list_vms(self) -> List[VirtualMachine]:
        """
        List all virtual machines with their current state.

        Returns:
            VMs in the hypervisor's enumeration order

        Raises:
            HypervisorError: If the query fails or its output cannot be parsed
        """
        result = self._run(self.LIST_SCRIPT)
        if not result.ok:
            raise HypervisorError(f"Get-VM failed (exit {result.returncode}): {result.summary()}")

        output = result.stdout.strip()
        if not output:
            return []

        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise HypervisorError(f"Unexpected Get-VM output: {e}") from e

        # ConvertTo-Json emits a bare object when there is a single VM
        if isinstance(data, dict):
            data = [data]

        try:
            return [VirtualMachine(id=str(item['Id']), name=item['Name'], state=str(item['State'])) for item in data]
        except (KeyError, TypeError) as e:
            raise HypervisorError(f"Unexpected Get-VM output: missing {e}") from e

    def export_vm(self, vm_id: str, dest_path: str):
        """
        Export a virtual machine into dest_path.

        Raises:
            HypervisorError: If the export fails
        """
        os.makedirs(dest_path, exist_ok=True)
        script = f"Get-VM -Id {_quote(vm_id)} | Export-VM -Path {_quote(dest_path)}"

        result = self._run(script)
        if not result.ok:
            raise HypervisorError(f"Export of VM {vm_id} failed (exit {result.returncode}): {result.summary()}")


def _quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string."""
    return "'" + value.replace("'", "''") + "'"
