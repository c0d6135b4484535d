"""
Unit tests for VM selection (vmkeeper/backup/selection.py).
"""

from vmkeeper.backup.hypervisor import VirtualMachine
from vmkeeper.backup.selection import select_virtual_machines
from vmkeeper.backup.settings import PolicySet, VMPolicy


def _policies(running_only=False, excluded=()):
    defaults = VMPolicy('all', exclude=False, skip_local_checksum=False,
                        skip_remote_verification=False, running_only=running_only)
    overrides = {vm_id.lower(): VMPolicy(vm_id, exclude=True) for vm_id in excluded}
    return PolicySet(defaults=defaults, overrides=overrides)


class TestSelection:

    def test_all_vms_when_not_running_only(self, three_vms):
        result = select_virtual_machines(_policies(), three_vms)

        assert result.vms == three_vms
        assert result.nothing_to_do is False

    def test_running_only(self, three_vms):
        result = select_virtual_machines(_policies(running_only=True), three_vms)

        assert [vm.name for vm in result.vms] == ['web01', 'db_primary']

    def test_running_only_with_nothing_running(self):
        vms = [VirtualMachine('a', 'one', 'Off'), VirtualMachine('b', 'two', 'Saved')]

        result = select_virtual_machines(_policies(running_only=True), vms)

        assert result.vms == []
        assert result.nothing_to_do is True

    def test_exclusions_keep_enumeration_order(self, three_vms):
        result = select_virtual_machines(_policies(excluded=[three_vms[1].id.upper()]), three_vms)

        assert [vm.name for vm in result.vms] == ['web01', 'build agent']

    def test_everything_excluded_is_nothing_to_do(self, three_vms):
        result = select_virtual_machines(_policies(excluded=[vm.id for vm in three_vms]), three_vms)

        assert result.nothing_to_do is True

    def test_no_vms_on_host(self):
        assert select_virtual_machines(_policies(), []).nothing_to_do is True

    def test_state_comparison_is_case_insensitive(self):
        vms = [VirtualMachine('a', 'one', 'RUNNING')]

        assert select_virtual_machines(_policies(running_only=True), vms).vms == vms
