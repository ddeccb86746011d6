import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .fs import atomic_write_text
from .json import stable_json_dumps

_CHUNK = 1 << 20


@dataclass(frozen=True)
class FileDigest:
    sha256: str
    bytes: int


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def sha256_file(path: Path) -> FileDigest:
    h = hashlib.sha256()
    size = 0
    with Path(path).open("rb") as f:
        for block in iter(lambda: f.read(_CHUNK), b""):
            h.update(block)
            size += len(block)
    return FileDigest(sha256=h.hexdigest(), bytes=size)


def fingerprint(obj: Any) -> str:
    """
    sha256 of the canonical JSON form of `obj`. Key order never matters.
    """
    return sha256_bytes(stable_json_dumps(obj, indent=None).encode("utf-8"))


def write_sha256_sum_txt(path: Path, entries: Mapping[str, str]) -> None:
    """
    `sha256sum -c` compatible listing, sorted by name.
    """
    atomic_write_text(
        Path(path), "".join(f"{entries[name]}  {name}\n" for name in sorted(entries))
    )
