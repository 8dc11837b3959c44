"""
Test round-robin scheduling of several VMs.
"""

import io

import pytest

from migvm.vcpu.runner import RunnerError, Scheduler
from migvm.vcpu.vcpu import SliceExit
from migvm.vm.vm import VirtualMachine


def make_vm(name, program, slice_size=2) -> VirtualMachine:
    return VirtualMachine(name, slice_size, program, output=io.StringIO())


class TestScheduler:
    """Fixed-order round robin with fixed-size slices."""

    def test_short_vm_finishes_first(self):
        vm1 = make_vm("vm1", ["addi $1,$1,1"] * 10)
        vm2 = make_vm("vm2", ["addi $2,$2,1"] * 3)

        stats = Scheduler([vm1, vm2]).run(max_rounds=2)

        assert not vm2.runnable
        assert vm1.runnable
        assert stats["slices"] == {"vm1": 2, "vm2": 2}

    def test_finished_vm_is_not_invoked_again(self):
        vm1 = make_vm("vm1", ["addi $1,$1,1"] * 10)
        vm2 = make_vm("vm2", ["addi $2,$2,1"] * 3)

        stats = Scheduler([vm1, vm2]).run()

        assert stats["finished"]
        assert stats["rounds"] == 5
        assert stats["slices"] == {"vm1": 5, "vm2": 2}
        assert vm1.registers[1] == 10
        assert vm2.registers[2] == 3

        vm2_turns = [entry for entry in stats["trace"] if entry[1] == "vm2"]
        assert [entry[0] for entry in vm2_turns] == [1, 2]

    def test_visitation_order_and_trace(self):
        vm1 = make_vm("vm1", ["li $1,1"] * 4)
        vm2 = make_vm("vm2", ["li $1,1"] * 4)

        stats = Scheduler([vm1, vm2]).run()

        assert stats["trace"] == [
            (1, "vm1", 0, 2, "SLICE_EXHAUSTED"),
            (1, "vm2", 0, 2, "SLICE_EXHAUSTED"),
            (2, "vm1", 2, 4, "END_OF_PROGRAM"),
            (2, "vm2", 2, 4, "END_OF_PROGRAM"),
        ]

    def test_each_vm_uses_its_own_slice_size(self):
        vm1 = make_vm("vm1", ["li $1,1"] * 6, slice_size=3)
        vm2 = make_vm("vm2", ["li $1,1"] * 6, slice_size=1)

        stats = Scheduler([vm1, vm2]).run()

        assert stats["slices"] == {"vm1": 2, "vm2": 6}

    def test_failure_is_reported_and_others_continue(self):
        bad = make_vm("bad", ["li $1,1", "li $1", "li $2,2"], slice_size=1)
        good = make_vm("good", ["addi $1,$1,1"] * 5, slice_size=1)

        stats = Scheduler([bad, good]).run()

        assert stats["finished"]
        assert len(stats["errors"]) == 1
        name, error = stats["errors"][0]
        assert name == "bad"
        assert stats["exit_reasons"]["bad"] == "DECODE_ERROR"
        assert stats["slices"]["bad"] == 2
        assert bad.registers[2] == 0
        assert good.registers[1] == 5

    def test_on_switch_hook(self):
        seen = []
        vm1 = make_vm("vm1", ["li $1,1"] * 3)

        Scheduler([vm1], on_switch=lambda vm, r: seen.append((vm.name, r.exit))).run()

        assert seen == [
            ("vm1", SliceExit.SLICE_EXHAUSTED),
            ("vm1", SliceExit.END_OF_PROGRAM),
        ]

    def test_no_vms(self):
        with pytest.raises(RunnerError):
            Scheduler().run()

    def test_duplicate_names(self):
        with pytest.raises(RunnerError):
            Scheduler([make_vm("a", []), make_vm("a", [])])
