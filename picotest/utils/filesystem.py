"""Filesystem helpers: atomic writes, safe removal and cluster data directories."""

import os
import random
import shutil
import string
import tempfile
from pathlib import Path
from typing import Union

from ..core.errors import FilesystemError, PathError, AtomicWriteError
from ..core.log import get_logger
from ..core.types import PicotestConfig

logger = get_logger(__name__)

DATA_SUBDIR = Path("tmp") / "tests"
DATA_DIR_NAME_LENGTH = 8


def atomic_write(path: Path, data: Union[str, bytes]) -> None:
    """Atomically write data to a file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    is_binary = isinstance(data, bytes)
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb" if is_binary else "w",
            dir=path.parent,
            delete=False,
            prefix=f".{path.name}.tmp",
            encoding=None if is_binary else "utf-8",
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        tmp_path.replace(path)
    except OSError as e:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass
        raise AtomicWriteError(f"Failed to atomically write to {path}: {e}") from e


def read_text(path: Path, encoding: str = "utf-8") -> str:
    """Read text file with proper error handling."""
    try:
        return Path(path).read_text(encoding=encoding)
    except FileNotFoundError as e:
        raise PathError(f"File not found: {path}") from e
    except UnicodeDecodeError as e:
        raise FilesystemError(f"Encoding error reading {path}: {e}") from e
    except OSError as e:
        raise FilesystemError(f"Error reading {path}: {e}") from e


def ensure_dir(path: Path) -> Path:
    try:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FilesystemError(f"Error creating directory {path}: {e}") from e


def safe_remove(path: Path) -> bool:
    """Remove a file or directory tree, returning success status."""
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
            return True
        if path.exists() or path.is_symlink():
            path.unlink()
            return True
        return False
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
        return False


def copy_file(src: Path, dst: Path) -> None:
    """Copy a file, creating the destination directory."""
    try:
        dst = Path(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        logger.debug("Copied %s to %s", src, dst)
    except FileNotFoundError as e:
        raise PathError(f"Source file not found: {src}") from e
    except OSError as e:
        raise FilesystemError(f"Error copying {src} to {dst}: {e}") from e


def random_name(length: int = DATA_DIR_NAME_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


class FilesystemService:
    """Lays out cluster data directories.

    Every cluster gets ``<root>/<random 8 chars>`` where root is the
    configured ``work_dir`` or ``<topology root>/tmp/tests``.
    """

    def __init__(self, config: PicotestConfig) -> None:
        self._config = config

    def data_root(self, topology_root: Path) -> Path:
        if self._config.work_dir is not None:
            return Path(self._config.work_dir)
        return Path(topology_root) / DATA_SUBDIR

    def new_cluster_dir(self, topology_root: Path) -> Path:
        root = self.data_root(topology_root)
        for _ in range(10):
            candidate = root / random_name()
            if not candidate.exists():
                return ensure_dir(candidate)
        raise FilesystemError(f"Could not pick a fresh data directory under {root}")

    def instance_dir(self, cluster_dir: Path, name: str) -> Path:
        return ensure_dir(Path(cluster_dir) / name)

    def remove_cluster_dir(self, cluster_dir: Path) -> None:
        if self._config.keep_data:
            logger.info("Keeping cluster data directory %s", cluster_dir)
            return
        if safe_remove(cluster_dir):
            logger.debug("Removed cluster data directory %s", cluster_dir)
