"""
Command-line interface for migvm.

This module defines all CLI commands using the Typer library.
"""

import logging
from pathlib import Path
from typing import Annotated

import typer

from migvm import __version__

app = typer.Typer(
    name="migvm",
    help="migvm - A register-machine VM with live migration and snapshots",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"migvm {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-V", help="Log debug output to stderr"),
    ] = False,
) -> None:
    """migvm - A register-machine VM with live migration and snapshots."""
    # Without --verbose, warnings and errors still reach stderr through
    # logging's last-resort handler
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(levelname)s %(name)s: %(message)s",
        )


def _report_failure(results) -> None:
    """Exit with status 1 if the last slice ended in an error."""
    if results and results[-1].failed:
        print(f"\nError: {results[-1].error}")
        raise typer.Exit(code=1)


@app.command("run")
def run_vm(
    config: Path = typer.Argument(..., help="VM configuration file"),
    snapshot: Path | None = typer.Option(
        None,
        "--snapshot",
        "-s",
        help="Snapshot file to restore registers from before running",
    ),
    port: int = typer.Option(
        8080,
        "--port",
        "-p",
        help="Port of the migration receiver",
    ),
    timeout: float = typer.Option(
        5.0,
        "--timeout",
        "-t",
        help="Connect/write timeout for migration, in seconds",
    ),
):
    """
    Run a single VM to completion.

    This is the sending side of a migration: a MIGRATE instruction stops
    the VM and ships its registers and PC to the named host.

    Example:
        migvm run vm1.conf
        migvm run vm1.conf --snapshot vm1.snap
    """
    from migvm.config import ConfigError, load_config
    from migvm.migration.transport import TransportConfig
    from migvm.state.codec import FormatError
    from migvm.vcpu.vcpu import SliceExit
    from migvm.vm.program import ProgramError
    from migvm.vm.vm import VirtualMachine, VMError

    try:
        vm_config = load_config(config)
        transport = TransportConfig(
            port=port, connect_timeout=timeout, read_timeout=timeout
        )
        vm = VirtualMachine.from_config("Local Machine", vm_config, migration=transport)

        if snapshot is not None:
            if vm.restore_snapshot(snapshot):
                print(f"Restored registers from {snapshot}")
            else:
                print(f"No snapshot in {snapshot}, cold start")

        print()
        print(f"Before executing instructions program counter value is {vm.pc}")

        results = vm.run_to_completion()

        print()
        print("Dump Processor State")
        vm.dump_state()
        print()

        if results and results[-1].exit == SliceExit.MIGRATED:
            print(f"Before migrate to remote server program counter value is {vm.pc}")
        else:
            print(f"After executing instructions program counter value is {vm.pc}")

    except (ConfigError, ProgramError, FormatError, VMError, OSError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)

    _report_failure(results)


@app.command("serve")
def serve(
    config: Path = typer.Argument(..., help="VM configuration file"),
    host: str = typer.Option(
        "0.0.0.0",
        "--host",
        "-H",
        help="Interface to listen on",
    ),
    port: int = typer.Option(
        8080,
        "--port",
        "-p",
        help="Port to listen on",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds to wait for a sender (default: wait forever)",
    ),
):
    """
    Receive one migrated VM and run it to completion.

    The instruction file from CONFIG is loaded before listening; it must
    be the same program the sender is running. Execution resumes on the
    instruction after the sender's MIGRATE.

    Example:
        migvm serve vm1.conf
        migvm serve vm1.conf --port 9000 --timeout 30
    """
    from migvm.config import ConfigError, load_config
    from migvm.migration.transport import (
        MigrationListener,
        TransportConfig,
        TransportError,
    )
    from migvm.state.codec import FormatError
    from migvm.vm.program import ProgramError
    from migvm.vm.vm import VirtualMachine, VMError

    try:
        vm_config = load_config(config)
        vm = VirtualMachine.from_config("Remote Machine", vm_config)

        transport = TransportConfig(bind_host=host, port=port, accept_timeout=timeout)
        with MigrationListener(transport) as listener:
            print(f"Server is Running on port {listener.port}")
            state = listener.receive()

        vm.resume_migrated(state)

        print()
        print(f"After migrate to remote server program counter value is {vm.pc}")

        results = vm.run_to_completion()

        print()
        print("Dump Processor State")
        vm.dump_state()
        print()

    except (
        ConfigError, ProgramError, FormatError, TransportError, VMError, OSError
    ) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)

    _report_failure(results)


@app.command("schedule")
def schedule(
    configs: list[Path] = typer.Argument(..., help="One configuration file per VM"),
    snapshots: list[Path] | None = typer.Option(
        None,
        "--snapshot",
        "-s",
        help="Snapshot file per VM, matched to configs by position",
    ),
):
    """
    Run several VMs with round-robin context switches.

    Each VM gets one slice of vm_exec_slice_in_instructions instructions
    per turn until every VM has finished.

    Example:
        migvm schedule vm1.conf vm2.conf
        migvm schedule vm1.conf vm2.conf -s vm1.snap -s vm2.snap
    """
    from migvm.config import ConfigError, load_config
    from migvm.state.codec import FormatError
    from migvm.vcpu.runner import RunnerError, Scheduler
    from migvm.vm.program import ProgramError
    from migvm.vm.vm import VirtualMachine, VMError

    snapshots = snapshots or []
    if len(snapshots) > len(configs):
        print(f"Error: {len(snapshots)} snapshots given for {len(configs)} VMs")
        raise typer.Exit(code=1)

    def on_switch(vm, result):
        print()
        print(f"Context Switch to {vm.name}")
        print(
            f"Program counter {result.pc_before} -> {result.pc_after} "
            f"({result.executed} instructions, {result.exit_name})"
        )

    try:
        vms = [
            VirtualMachine.from_config(f"Virtual Machine {i}", load_config(path))
            for i, path in enumerate(configs, start=1)
        ]

        for vm, snapshot in zip(vms, snapshots):
            if vm.restore_snapshot(snapshot):
                print(f"{vm.name}: restored registers from {snapshot}")
            else:
                print(f"{vm.name}: {snapshot} is empty or missing, cold start")

        print()
        print("Context switch between Virtual Machines")

        stats = Scheduler(vms, on_switch=on_switch).run()

    except (
        ConfigError, ProgramError, FormatError, RunnerError, VMError, OSError
    ) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)

    print()
    print("Dump Processor State")
    for vm in vms:
        vm.dump_state()

    print()
    print(f"Finished after {stats['rounds']} rounds")

    if stats["errors"]:
        for name, error in stats["errors"]:
            print(f"Error in {name}: {error}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
