"""Tests for job input validation and content hashing."""
import pytest

from forge_service.errors import (
    FileTooLarge,
    InvalidPath,
    TooManyFiles,
    TotalSizeExceeded,
    UnsupportedChain,
)
from forge_service.forge_jobs.content_hash import compute_files_hash
from forge_service.forge_jobs.input_validator import is_safe_path, validate_job_input
from forge_service.forge_jobs.limits import EngineLimits
from forge_service.forge_jobs.schemas import ForkConfig, JobInput, SourceFile


def _files(count, size=10):
    return [SourceFile(path=f"src/F{i}.sol", content="x" * size) for i in range(count)]


def test_accepts_exactly_max_files():
    validate_job_input(JobInput(files=_files(50)))


def test_rejects_one_file_over_max():
    with pytest.raises(TooManyFiles) as exc:
        validate_job_input(JobInput(files=_files(51)))
    assert exc.value.code == "TooManyFiles"
    assert exc.value.status_code == 400


def test_accepts_file_of_exactly_max_size():
    validate_job_input(JobInput(files=_files(1, size=500 * 1024)))


def test_rejects_file_one_byte_over_max_size():
    with pytest.raises(FileTooLarge):
        validate_job_input(JobInput(files=_files(1, size=500 * 1024 + 1)))


def test_file_size_counts_utf8_bytes():
    limits = EngineLimits(max_file_size=4)
    validate_job_input(JobInput(files=[SourceFile(path="a.sol", content="abcd")]), limits)
    with pytest.raises(FileTooLarge):
        # two characters, six bytes
        validate_job_input(JobInput(files=[SourceFile(path="a.sol", content="\u20ac\u20ac")]), limits)


def test_rejects_total_size_over_max():
    # 11 files of 500 KiB each is 5.37 MiB
    with pytest.raises(TotalSizeExceeded):
        validate_job_input(JobInput(files=_files(11, size=500 * 1024)))


@pytest.mark.parametrize("path", ["../x", "/etc/passwd", "a/../../x", "src\\..\\..\\x", "C:\\x.sol", ""])
def test_rejects_unsafe_paths(path):
    with pytest.raises(InvalidPath):
        validate_job_input(JobInput(files=[SourceFile(path=path, content="x")]))


@pytest.mark.parametrize("path", ["src/Counter.sol", "foundry.toml", "test/a..b.t.sol", "lib/forge-std/src/Test.sol"])
def test_safe_paths(path):
    assert is_safe_path(path)


def test_count_checked_before_paths():
    files = _files(51) + [SourceFile(path="../evil", content="x")]
    with pytest.raises(TooManyFiles):
        validate_job_input(JobInput(files=files))


def test_rejects_unsupported_fork_chain():
    job_input = JobInput(files=_files(1), fork_config=ForkConfig(chain_id=999999))
    with pytest.raises(UnsupportedChain) as exc:
        validate_job_input(job_input)
    assert exc.value.chain_id == 999999


def test_accepts_supported_fork_chain():
    validate_job_input(JobInput(files=_files(1), fork_config=ForkConfig(chain_id=8453, block_number=100)))


def test_hash_ignores_submission_order():
    a = SourceFile(path="src/A.sol", content="contract A {}")
    b = SourceFile(path="src/B.sol", content="contract B {}")
    assert compute_files_hash([a, b]) == compute_files_hash([b, a])


def test_hash_changes_with_content_and_path():
    base = compute_files_hash([SourceFile(path="src/A.sol", content="contract A {}")])
    assert base != compute_files_hash([SourceFile(path="src/A.sol", content="contract A { }")])
    assert base != compute_files_hash([SourceFile(path="src/B.sol", content="contract A {}")])
    assert len(base) == 64


def test_hash_keeps_file_boundaries_distinct():
    # Separator characters inside paths or contents cannot shift a boundary
    one_file = [SourceFile(path="a", content="x\nb:y")]
    two_files = [SourceFile(path="a", content="x"), SourceFile(path="b", content="y")]
    assert compute_files_hash(one_file) != compute_files_hash(two_files)

    colon_in_path = [SourceFile(path="a:b", content="c")]
    colon_in_content = [SourceFile(path="a", content="b:c")]
    assert compute_files_hash(colon_in_path) != compute_files_hash(colon_in_content)
