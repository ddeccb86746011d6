import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

from .time import utc_stamp


def ensure_parent(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def safe_unlink(path: os.PathLike[str] | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        return


def relpath_posix(path: Path, base_dir: Path) -> str:
    return Path(path).relative_to(base_dir).as_posix()


def fsync_dir(parent: Path) -> None:
    fd = os.open(parent, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


@contextmanager
def _replace_when_done(path: Path, *, mode: int) -> Iterator[IO[bytes]]:
    """
    Yield a temp file beside `path`; on a clean exit it is fsync'd and
    renamed over `path`, otherwise it is discarded.
    """
    ensure_parent(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        safe_unlink(tmp_path)
        raise
    fsync_dir(path.parent)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o644) -> None:
    """Readers see either the old complete file or the new complete file."""
    with _replace_when_done(Path(path), mode=mode) as f:
        f.write(data)


def atomic_write_text(
    path: Path, text: str, *, encoding: str = "utf-8", mode: int = 0o644
) -> None:
    atomic_write_bytes(path, text.encode(encoding), mode=mode)


def remove_tree(path: Path) -> None:
    """Delete a directory tree or a single file; missing paths are fine."""
    path = Path(path)
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def seed_tree(src: Path, dst: Path) -> None:
    """
    Copy the contents of `src` into `dst`, keeping symlinks as symlinks.
    """
    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)


def make_tmp_dir_for(final_dir: Path) -> Path:
    """
    Staging dir beside `final_dir`, on the same filesystem so the final
    rename is atomic.
    """
    final_dir = Path(final_dir)
    final_dir.parent.mkdir(parents=True, exist_ok=True)
    return Path(
        tempfile.mkdtemp(prefix=f".{final_dir.name}.staging.", dir=final_dir.parent)
    )


def atomic_dir_swap(final_dir: Path, tmp_dir: Path) -> None:
    """
    Rename `tmp_dir` to `final_dir`. An existing `final_dir` is moved aside
    first and put back if the rename fails.
    """
    final_dir = Path(final_dir)
    parent = final_dir.parent
    parent.mkdir(parents=True, exist_ok=True)

    previous: Path | None = None
    if final_dir.exists():
        previous = parent / f".{final_dir.name}.previous.{utc_stamp()}"
        remove_tree(previous)
        final_dir.rename(previous)

    try:
        Path(tmp_dir).rename(final_dir)
    except OSError:
        if previous is not None and not final_dir.exists():
            previous.rename(final_dir)
        raise

    if previous is not None:
        remove_tree(previous)
    fsync_dir(parent)


def atomic_dir_commit(
    *, tmp_dir: Path, final_dir: Path, overwrite: bool = False
) -> None:
    final_dir = Path(final_dir)
    if final_dir.exists() and not overwrite:
        raise FileExistsError(f"Target exists (overwrite disabled): {final_dir}")

    atomic_dir_swap(final_dir, Path(tmp_dir))


def copy_or_hardlink(src: Path, dst: Path) -> None:
    """
    Hardlink when src and dst share a filesystem, copy otherwise. Either way
    dst survives removal of src.
    """
    src = Path(src)
    dst = Path(dst)
    ensure_parent(dst)
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)
