"""
VM selection for a backup run.
"""

from dataclasses import dataclass, field
from typing import List

from .hypervisor import VirtualMachine
from .settings import PolicySet


@dataclass(frozen=True)
class SelectionResult:
    vms: List[VirtualMachine] = field(default_factory=list)
    nothing_to_do: bool = False


def select_virtual_machines(policies: PolicySet, live_vms: List[VirtualMachine]) -> SelectionResult:
    """
    Decide which VMs to back up.

    Candidates are the running VMs under the running-only policy, otherwise
    all VMs; excluded ids are removed and the hypervisor's enumeration order
    is kept. An empty result means the run has nothing to do.
    """
    if policies.running_only:
        candidates = [vm for vm in live_vms if vm.is_running]
        if not candidates:
            return SelectionResult(nothing_to_do=True)
    else:
        candidates = list(live_vms)

    selected = [vm for vm in candidates if not policies.is_excluded(vm.id)]
    return SelectionResult(vms=selected, nothing_to_do=not selected)
