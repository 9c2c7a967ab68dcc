"""
Input Validator

Enforces file-count, size, path-safety and chain-allowlist rules on a job
submission before anything is stored or executed. Rules are checked in a
fixed order and the first violation is raised.
"""
import re
from typing import Optional

from ..errors import (
    FileTooLarge,
    InvalidPath,
    TooManyFiles,
    TotalSizeExceeded,
    UnsupportedChain,
)
from .limits import EngineLimits
from .schemas import JobInput

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def is_safe_path(path: str) -> bool:
    """Relative path with no parent-directory segment."""
    if not path or path.startswith(("/", "\\")) or _DRIVE_PREFIX.match(path):
        return False
    segments = re.split(r"[/\\]", path)
    return ".." not in segments


def validate_job_input(job_input: JobInput, limits: Optional[EngineLimits] = None) -> None:
    """
    Validate a job input.

    Args:
        job_input: Resolved files and fork parameters
        limits: Ceilings to enforce (defaults to EngineLimits())

    Raises:
        TooManyFiles, FileTooLarge, TotalSizeExceeded, InvalidPath, UnsupportedChain
    """
    limits = limits or EngineLimits()
    files = job_input.files

    if len(files) > limits.max_files:
        raise TooManyFiles(f"Too many files: {len(files)} > {limits.max_files}")

    total_size = 0
    for f in files:
        size = len(f.content.encode("utf-8"))
        if size > limits.max_file_size:
            raise FileTooLarge(f"File {f.path} exceeds {limits.max_file_size} bytes")
        total_size += size

    if total_size > limits.max_total_size:
        raise TotalSizeExceeded(
            f"Total size {total_size} exceeds {limits.max_total_size} bytes"
        )

    for f in files:
        if not is_safe_path(f.path):
            raise InvalidPath(f"Invalid file path: {f.path}")

    if job_input.fork_config is not None:
        chain_id = job_input.fork_config.chain_id
        if limits.rpc_url(chain_id) is None:
            raise UnsupportedChain(chain_id)
