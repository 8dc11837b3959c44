import socket
import struct
import threading
import time

from typer.testing import CliRunner

from migvm import __version__
from migvm.cli import app
from migvm.migration.transport import TransportConfig, TransportError, send_state
from migvm.vcpu.registers import VMState

runner = CliRunner()


def write_vm(tmp_path, name, program, slice_size=4):
    binary = tmp_path / f"{name}.asm"
    binary.write_text("\n".join(program) + "\n")
    config = tmp_path / f"{name}.conf"
    config.write_text(
        f"vm_exec_slice_in_instructions={slice_size}\nvm_binary={binary.name}\n"
    )
    return config


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"migvm {__version__}" in result.stdout


def test_help() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "live migration" in result.stdout


def test_run(tmp_path) -> None:
    config = write_vm(
        tmp_path, "vm1", ["li $1,10", "li $2,20", "add $3,$1,$2", "DUMP_PROCESSOR_STATE"]
    )

    result = runner.invoke(app, ["run", str(config)])

    assert result.exit_code == 0
    assert "Before executing instructions program counter value is 0" in result.stdout
    assert "R3: 30" in result.stdout
    assert "After executing instructions program counter value is 4" in result.stdout


def test_run_with_snapshot(tmp_path) -> None:
    snapshot = tmp_path / "vm1.snap"
    snapshot.write_bytes(struct.pack("<32i", *range(32)))
    config = write_vm(tmp_path, "vm1", ["addi $1,$1,100"])

    result = runner.invoke(app, ["run", str(config), "--snapshot", str(snapshot)])

    assert result.exit_code == 0
    assert "Restored registers" in result.stdout
    assert "R1: 101" in result.stdout
    assert "R31: 31" in result.stdout


def test_run_decode_error(tmp_path) -> None:
    config = write_vm(tmp_path, "vm1", ["li $1,1", "frobnicate $1"])

    result = runner.invoke(app, ["run", str(config)])

    assert result.exit_code == 1
    assert "Error:" in result.stdout
    assert "frobnicate" in result.stdout


def test_run_missing_config(tmp_path) -> None:
    result = runner.invoke(app, ["run", str(tmp_path / "missing.conf")])
    assert result.exit_code == 1
    assert "Error:" in result.stdout


def test_run_missing_binary(tmp_path) -> None:
    config = tmp_path / "vm.conf"
    config.write_text("vm_exec_slice_in_instructions=1\nvm_binary=nothing.asm\n")

    result = runner.invoke(app, ["run", str(config)])

    assert result.exit_code == 1
    assert "nothing.asm" in result.stdout


def test_schedule(tmp_path) -> None:
    vm1 = write_vm(tmp_path, "vm1", ["addi $1,$1,1"] * 10, slice_size=2)
    vm2 = write_vm(tmp_path, "vm2", ["addi $2,$2,1"] * 3, slice_size=2)
    snap = tmp_path / "vm2.snap"

    result = runner.invoke(
        app, ["schedule", str(vm1), str(vm2), "-s", str(tmp_path / "none.snap"), "-s", str(snap)]
    )

    assert result.exit_code == 0
    assert "Context Switch to Virtual Machine 1" in result.stdout
    assert "Context Switch to Virtual Machine 2" in result.stdout
    assert "Register values for Virtual Machine 1" in result.stdout
    assert "R1: 10" in result.stdout
    assert "R2: 3" in result.stdout
    assert "Finished after 5 rounds" in result.stdout


def test_schedule_too_many_snapshots(tmp_path) -> None:
    vm1 = write_vm(tmp_path, "vm1", ["li $1,1"])

    result = runner.invoke(app, ["schedule", str(vm1), "-s", "a.snap", "-s", "b.snap"])

    assert result.exit_code == 1


def test_run_snapshot_is_directory(tmp_path) -> None:
    config = write_vm(tmp_path, "vm1", ["li $1,1"])

    result = runner.invoke(app, ["run", str(config), "--snapshot", str(tmp_path)])

    assert result.exit_code == 1
    assert "Error:" in result.stdout


def test_run_binary_is_directory(tmp_path) -> None:
    (tmp_path / "prog").mkdir()
    config = tmp_path / "vm.conf"
    config.write_text("vm_exec_slice_in_instructions=1\nvm_binary=prog\n")

    result = runner.invoke(app, ["run", str(config)])

    assert result.exit_code == 1
    assert "Error while reading file" in result.stdout


def test_run_binary_not_text(tmp_path) -> None:
    binary = tmp_path / "vm1.asm"
    binary.write_bytes(b"\xff\xfeli $1,1\n")
    config = tmp_path / "vm1.conf"
    config.write_text("vm_exec_slice_in_instructions=1\nvm_binary=vm1.asm\n")

    result = runner.invoke(app, ["run", str(config)])

    assert result.exit_code == 1
    assert "Error while reading file" in result.stdout


def test_schedule_snapshot_is_directory(tmp_path) -> None:
    vm1 = write_vm(tmp_path, "vm1", ["li $1,1"])

    result = runner.invoke(app, ["schedule", str(vm1), "-s", str(tmp_path)])

    assert result.exit_code == 1
    assert "Error:" in result.stdout


# ============================================================================
# serve
# ============================================================================

MIGRATING_PROGRAM = [
    "li $1,42",
    "li $2,8",
    "add $3,$1,$2",
    "MIGRATE 127.0.0.1",
    "addi $1,$1,1",
    "sub $4,$3,$1",
]


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class Sender(threading.Thread):
    """Sends one state once the server starts accepting connections."""

    def __init__(self, port, state):
        super().__init__(daemon=True)
        self.config = TransportConfig(port=port, connect_timeout=1.0)
        self.state = state
        self.error = None

    def run(self):
        deadline = time.monotonic() + 5.0
        while True:
            try:
                send_state("127.0.0.1", self.state, self.config)
                return
            except TransportError as e:
                if time.monotonic() > deadline:
                    self.error = e
                    return
                time.sleep(0.05)


def serve_args(config, port, timeout=5.0):
    return [
        "serve", str(config),
        "--host", "127.0.0.1",
        "--port", str(port),
        "--timeout", str(timeout),
    ]


def test_serve(tmp_path) -> None:
    config = write_vm(tmp_path, "vm1", MIGRATING_PROGRAM)
    port = free_port()
    registers = [0] * 32
    registers[1], registers[2], registers[3] = 42, 8, 50
    sender = Sender(port, VMState(tuple(registers), 3))
    sender.start()

    result = runner.invoke(app, serve_args(config, port))
    sender.join(timeout=10)

    assert sender.error is None
    assert result.exit_code == 0
    assert f"Server is Running on port {port}" in result.stdout
    assert "After migrate to remote server program counter value is 4" in result.stdout
    assert "Register values for Remote Machine" in result.stdout
    assert "R1: 43" in result.stdout
    assert "R4: 7" in result.stdout


def test_serve_accept_timeout(tmp_path) -> None:
    config = write_vm(tmp_path, "vm1", MIGRATING_PROGRAM)

    result = runner.invoke(app, serve_args(config, free_port(), timeout=0.2))

    assert result.exit_code == 1
    assert "Error:" in result.stdout
    assert "After migrate" not in result.stdout


def test_serve_pc_past_end(tmp_path) -> None:
    config = write_vm(tmp_path, "vm1", ["li $1,1"])
    port = free_port()
    sender = Sender(port, VMState((0,) * 32, 5))
    sender.start()

    result = runner.invoke(app, serve_args(config, port))
    sender.join(timeout=10)

    assert result.exit_code == 1
    assert "same instruction file" in result.stdout
