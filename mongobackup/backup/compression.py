"""
Archive building for dump directories.

Archives are always gzip compressed tars rooted at the dump directory's
name. File selection happens before the tar is written:
- complete: every file
- filtered: drop files named "{name}.*" for each excluded name
- talk only: keep only files named "{name}.*" for each included name
"""

import os
import re
import shutil
import tarfile
from pathlib import Path
from typing import Iterable, List, Optional

from mongobackup.models import ArchiveVariant


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


ARCHIVE_EXTENSION = 'tar.gz'


def name_patterns(names: Iterable[str]) -> List[str]:
    """Glob patterns matching the files of the named collections."""
    return [f"{name}.*" for name in names]


def select_files(
    source_dir: str,
    excludes: Optional[Iterable[str]] = None,
    includes: Optional[Iterable[str]] = None
) -> List[str]:
    """
    List the files of source_dir that belong in an archive.

    Args:
        source_dir: Directory to scan recursively
        excludes: Collection names whose files are dropped
        includes: Collection names whose files are kept (all others dropped)

    Returns:
        Sorted paths relative to source_dir

    Raises:
        CompressionError: If source_dir does not exist
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise CompressionError(f"Path does not exist: {source_dir}")

    variant = ArchiveVariant(
        kind='complete',
        source_dir=source_dir,
        archive_name=source.name,
        excludes=tuple(excludes or ()),
        includes=tuple(includes or ())
    )

    selected = []
    for item in source.rglob('*'):
        if item.is_file():
            relative_path = str(item.relative_to(source))
            if variant.selects(relative_path):
                selected.append(relative_path)

    return sorted(selected)


def create_archive(
    source_dir: str,
    output_path: str,
    excludes: Optional[Iterable[str]] = None,
    includes: Optional[Iterable[str]] = None
) -> str:
    """
    Create a tar.gz archive of a dump directory.

    Members are stored as "{basename(source_dir)}/{relative path}", the
    layout downstream consumers of the backups expect.

    Args:
        source_dir: Directory to archive
        output_path: Path where archive should be created (without extension)
        excludes: Collection names to leave out
        includes: Collection names to keep exclusively

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If nothing is selected or writing fails
    """
    files = select_files(source_dir, excludes, includes)
    if not files:
        raise CompressionError(f"No files selected for archive from {source_dir}")

    archive_path = f"{output_path}.{ARCHIVE_EXTENSION}"
    arcroot = Path(source_dir).name

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            for relative_path in files:
                tar.add(
                    os.path.join(source_dir, relative_path),
                    arcname=f"{arcroot}/{relative_path}",
                    recursive=False
                )
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise CompressionError(f"Failed to create archive: {e}")


def build_variant(variant: ArchiveVariant, destination_dir: str) -> str:
    """
    Build an archive variant and move it into the backups directory.

    The archive is first written next to its source directory and then
    relocated, so a half-written file never appears under destination_dir.

    Returns:
        Final path of the archive
    """
    staging_base = os.path.join(os.path.dirname(variant.source_dir.rstrip(os.sep)), variant.archive_name)
    built = create_archive(variant.source_dir, staging_base, variant.excludes, variant.includes)

    try:
        os.makedirs(destination_dir, exist_ok=True)
        final_path = os.path.join(destination_dir, os.path.basename(built))
        shutil.move(built, final_path)
    except OSError as e:
        raise CompressionError(f"Failed to move archive into {destination_dir}: {e}")

    variant.archive_path = final_path
    return final_path


def flatten_dump(dump_dir: str, skip_patterns: Iterable[str] = ()) -> List[str]:
    """
    Flatten the per-database directories mongodump writes.

    mongodump --out DIR produces DIR/<db>/<collection>.bson; archives carry
    the collection files directly under DIR. Files whose basename matches a
    skip pattern (regular expression search) are dropped.

    Returns:
        Basenames of the files moved up

    Raises:
        CompressionError: If dump_dir does not exist or two databases
            produce the same file name
    """
    root = Path(dump_dir)
    if not root.is_dir():
        raise CompressionError(f"Dump directory does not exist: {dump_dir}")

    skips = [re.compile(p) for p in skip_patterns]
    moved = []

    for nested in sorted(p for p in root.iterdir() if p.is_dir()):
        for item in sorted(nested.iterdir()):
            if any(s.search(item.name) for s in skips):
                continue
            target = root / item.name
            if target.exists():
                raise CompressionError(f"Refusing to overwrite {target} while flattening {nested}")
            shutil.move(str(item), str(target))
            moved.append(item.name)
        shutil.rmtree(nested)

    return moved


def purge_directory(path: str):
    """
    Remove everything inside path.

    Safe to call on a missing or already empty directory, and safe to call
    repeatedly.
    """
    root = Path(path)
    if not root.exists():
        return

    for item in root.iterdir():
        if item.is_dir() and not item.is_symlink():
            shutil.rmtree(item)
        else:
            item.unlink()


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
