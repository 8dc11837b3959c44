"""
Round-robin VM scheduler.

This module runs several VMs on one host thread, the way a hypervisor
shares a physical CPU between guests:

1. Visit each VM in a fixed order
2. If it can still run, give it one slice (at most slice_size instructions)
3. Move on to the next VM - this is the "context switch"
4. Repeat until no VM can run

There is no priority and no preemption inside a slice. A VM that finishes,
migrates away or fails is simply skipped from then on, and the others keep
getting their turns.
"""

import logging
from typing import TYPE_CHECKING, Callable

from .vcpu import SliceResult

if TYPE_CHECKING:
    from migvm.vm.vm import VirtualMachine

logger = logging.getLogger(__name__)


class RunnerError(Exception):
    """Exception raised when the scheduler is misconfigured."""
    pass


SwitchHook = Callable[["VirtualMachine", SliceResult], None]


class Scheduler:
    """
    Cooperative round-robin scheduler.

    Usage:
        scheduler = Scheduler([vm1, vm2])
        stats = scheduler.run()
        for name, error in stats["errors"]:
            print(f"{name} failed: {error}")
    """

    def __init__(self, vms=(), on_switch: SwitchHook | None = None):
        """
        Create a scheduler.

        Args:
            vms: VMs in visitation order.
            on_switch: Called after every slice with (vm, result). The CLI
                       uses this to print context switch reports.
        """
        self._vms: list["VirtualMachine"] = []
        self._on_switch = on_switch
        for vm in vms:
            self.add(vm)

    def add(self, vm: "VirtualMachine"):
        """
        Append a VM to the visitation order.

        Raises:
            RunnerError: If a VM with the same name is already scheduled.
        """
        if any(existing.name == vm.name for existing in self._vms):
            raise RunnerError(f"VM name {vm.name!r} is already scheduled")
        self._vms.append(vm)

    @property
    def vms(self) -> list["VirtualMachine"]:
        """Get the scheduled VMs (read-only)."""
        return list(self._vms)

    def run(self, max_rounds: int | None = None) -> dict:
        """
        Run all VMs until none is runnable or max_rounds is reached.

        A round visits every VM once; finished VMs are skipped without
        being invoked.

        Args:
            max_rounds: Stop after this many rounds (None = no limit).

        Returns:
            Dict with scheduling statistics:
            - rounds: Number of rounds started
            - slices: Dict mapping VM name to slices it was given
            - exit_reasons: Dict mapping VM name to its last exit name
            - errors: List of (vm_name, exception) for failed VMs
            - trace: List of (round, vm_name, pc_before, pc_after, exit_name)
            - finished: Whether every VM finished

        Raises:
            RunnerError: If there is nothing to schedule.
        """
        if not self._vms:
            raise RunnerError("No VMs to schedule - call add() first")

        stats = {
            "rounds": 0,
            "slices": {vm.name: 0 for vm in self._vms},
            "exit_reasons": {vm.name: None for vm in self._vms},
            "errors": [],
            "trace": [],
            "finished": False,
        }

        while any(vm.runnable for vm in self._vms):
            if max_rounds is not None and stats["rounds"] >= max_rounds:
                break
            stats["rounds"] += 1

            for vm in self._vms:
                if not vm.runnable:
                    continue

                result = vm.run_slice()

                stats["slices"][vm.name] += 1
                stats["exit_reasons"][vm.name] = result.exit_name
                stats["trace"].append((
                    stats["rounds"],
                    vm.name,
                    result.pc_before,
                    result.pc_after,
                    result.exit_name,
                ))
                logger.debug(
                    f"round {stats['rounds']}: {vm.name} PC "
                    f"{result.pc_before} -> {result.pc_after} ({result.exit_name})"
                )

                if result.failed:
                    logger.error(f"{vm.name} stopped: {result.error}")
                    stats["errors"].append((vm.name, result.error))

                if self._on_switch is not None:
                    self._on_switch(vm, result)

        stats["finished"] = not any(vm.runnable for vm in self._vms)
        return stats
