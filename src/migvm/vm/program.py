"""
Instruction file loading.
"""

from pathlib import Path


class ProgramError(Exception):
    """Exception raised when an instruction file cannot be read."""
    pass


class NotFoundError(ProgramError):
    """Exception raised when an instruction file does not exist."""
    pass


def load_program(path: str | Path) -> tuple[str, ...]:
    """
    Read an instruction file, one instruction per line.

    Line endings are stripped and whitespace-only lines are dropped, so
    the PC counts instructions, not lines. Both ends of a migration load
    the same file and therefore agree on every index.

    Raises:
        NotFoundError: If the file does not exist.
        ProgramError: If the file exists but cannot be read as text.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NotFoundError(f"Error while opening file {path}") from None
    except (OSError, UnicodeDecodeError) as e:
        raise ProgramError(f"Error while reading file {path}: {e}") from e

    return tuple(line.rstrip() for line in text.splitlines() if line.strip())
