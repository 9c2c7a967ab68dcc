"""Content-addressed digest of a job's file set, used as the result cache key."""
import hashlib
import json
from typing import Iterable

from .schemas import SourceFile


def compute_files_hash(files: Iterable[SourceFile]) -> str:
    """
    SHA-256 over the files sorted by path, encoded as a JSON list of
    ``[path, content]`` pairs. JSON string escaping keeps every boundary
    between paths, contents and files unambiguous, and submission order
    never changes the digest.
    """
    ordered = sorted(files, key=lambda f: f.path)
    canonical = json.dumps(
        [[f.path, f.content] for f in ordered],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
