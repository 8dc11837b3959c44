"""
VM configuration files.

A configuration file is a list of key=value lines:

    vm_exec_slice_in_instructions=4
    vm_binary=programs/sum.asm
    vm_opcode_case=strict

Blank lines and lines starting with '#' are ignored, as are keys this
module does not know about.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from migvm.vcpu.decoder import OpcodeCase

logger = logging.getLogger(__name__)

SLICE_KEY = "vm_exec_slice_in_instructions"
BINARY_KEY = "vm_binary"
OPCODE_CASE_KEY = "vm_opcode_case"


class ConfigError(Exception):
    """Exception raised when a configuration file is missing or invalid."""
    pass


@dataclass
class VMConfig:
    """
    Settings for one VM.

    Attributes:
        slice_size: Instructions per scheduling turn (>= 1)
        binary: Path to the instruction file
        opcode_case: How opcode tokens are matched
    """
    slice_size: int
    binary: Path
    opcode_case: OpcodeCase = OpcodeCase.STRICT


def parse_config(text: str, base_dir: Path | None = None) -> VMConfig:
    """
    Parse configuration text.

    Args:
        text: The file contents.
        base_dir: Directory that a relative vm_binary is resolved against.

    Returns:
        The parsed VMConfig.

    Raises:
        ConfigError: If a required key is missing or a value is invalid.
    """
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise ConfigError(f"line {lineno}: expected key=value, got {raw!r}")
        key = key.strip()
        if key not in (SLICE_KEY, BINARY_KEY, OPCODE_CASE_KEY):
            logger.debug(f"Ignoring unknown configuration key {key!r}")
            continue
        values[key] = value.strip()

    for required in (SLICE_KEY, BINARY_KEY):
        if not values.get(required):
            raise ConfigError(f"missing required key {required!r}")

    try:
        slice_size = int(values[SLICE_KEY])
    except ValueError:
        raise ConfigError(
            f"{SLICE_KEY} must be an integer, got {values[SLICE_KEY]!r}"
        ) from None
    if slice_size < 1:
        raise ConfigError(f"{SLICE_KEY} must be at least 1, got {slice_size}")

    case_name = values.get(OPCODE_CASE_KEY, OpcodeCase.STRICT.value).lower()
    try:
        opcode_case = OpcodeCase(case_name)
    except ValueError:
        choices = ", ".join(c.value for c in OpcodeCase)
        raise ConfigError(
            f"{OPCODE_CASE_KEY} must be one of {choices}, got {case_name!r}"
        ) from None

    binary = Path(values[BINARY_KEY])
    if base_dir is not None and not binary.is_absolute():
        binary = base_dir / binary

    return VMConfig(slice_size=slice_size, binary=binary, opcode_case=opcode_case)


def load_config(path: str | Path) -> VMConfig:
    """
    Read and parse a configuration file.

    A relative vm_binary is resolved against the directory holding the
    configuration file.

    Raises:
        ConfigError: If the file cannot be read or is invalid.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Error opening configuration file {path}: {e}") from e

    try:
        return parse_config(text, base_dir=path.parent)
    except ConfigError as e:
        raise ConfigError(f"{path}: {e}") from e
