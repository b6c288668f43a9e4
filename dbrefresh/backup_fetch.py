"""Retrieve the newest production backup into the local backup folder.

A copy already in place is kept when it matches the newest source file,
first by size and modification time and, failing that, by content hash.
"""
import hashlib
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import cached_property

from dbrefresh.errors import FetchError

DEFAULT_BACKUP_NAME = 'SITSRefresh.bak'
MAX_BACKUP_AGE = timedelta(hours=20)
_CHUNK_SIZE = 4 * 1024 * 1024


def compute_hash(path):
    """SHA-256 of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, 'rb') as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class BackupCandidate:
    name: str
    path: str
    length: int
    modified: datetime

    @classmethod
    def from_path(cls, path):
        stat = os.stat(path)
        return cls(
            name=os.path.basename(path),
            path=os.path.abspath(path),
            length=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime),
        )

    @cached_property
    def content_hash(self):
        return compute_hash(self.path)

    def same_metadata(self, other):
        return self.length == other.length and self.modified == other.modified


def scan_backup_folder(source_dir):
    """Every regular file in the source folder as a BackupCandidate."""
    if not os.path.isdir(source_dir):
        return []
    candidates = []
    with os.scandir(source_dir) as entries:
        for entry in entries:
            if entry.is_file():
                candidates.append(BackupCandidate.from_path(entry.path))
    return candidates


def select_latest(candidates):
    """Newest by modification time; equal times fall back to the greatest name."""
    if not candidates:
        return None
    return max(candidates, key=lambda c: (c.modified, c.name))


def clear_folder(folder, log):
    for entry in os.scandir(folder):
        if entry.is_file():
            log.info(f"Removing {entry.path}")
            os.remove(entry.path)


def free_space(folder):
    return shutil.disk_usage(folder).free


def copy_backup(source, destination):
    shutil.copy2(source, destination)


def fetch_latest(source_dir, dest_dir, log, file_name=DEFAULT_BACKUP_NAME, now=None,
                 max_age=MAX_BACKUP_AGE):
    """Copy the newest backup in source_dir to dest_dir/file_name.

    Returns the destination path. Raises FetchError when there is nothing to
    copy, the backup is too old, or the destination volume is too small.
    """
    log.info(f"Scanning backup folder: {source_dir}")
    candidate = select_latest(scan_backup_folder(source_dir))
    if candidate is None:
        error_msg = f"No backup files found in {source_dir}"
        log.error(error_msg)
        raise FetchError(error_msg)
    log.info(f"Latest backup: {candidate.name} ({candidate.length} bytes, modified {candidate.modified:%Y-%m-%d %H:%M:%S})")

    destination = os.path.join(dest_dir, file_name)
    if os.path.isfile(destination):
        existing = BackupCandidate.from_path(destination)
        if candidate.same_metadata(existing):
            log.info(f"{destination} already exists with the same size and timestamp, skipping copy")
            return destination

        log.info("Size or timestamp differs, comparing file hashes...")
        if candidate.content_hash == existing.content_hash:
            log.info(f"{destination} already exists with identical content, skipping copy")
            return destination

        log.info(f"Existing backup differs from {candidate.name}, clearing {dest_dir}")
        clear_folder(dest_dir, log)

    now = now or datetime.now()
    age = now - candidate.modified
    if age >= max_age:
        error_msg = (f"Latest backup {candidate.name} is {age.total_seconds() / 3600:.1f} hours old "
                     f"(limit {max_age.total_seconds() / 3600:.0f} hours)")
        log.error(error_msg)
        raise FetchError(error_msg)

    os.makedirs(dest_dir, exist_ok=True)
    try:
        available = free_space(dest_dir)
    except OSError as e:
        error_msg = f"Could not determine free space for {dest_dir}: {str(e)}"
        log.error(error_msg)
        raise FetchError(error_msg) from e
    if available <= candidate.length:
        error_msg = f"Not enough free space in {dest_dir}: {available} bytes free, {candidate.length} required"
        log.error(error_msg)
        raise FetchError(error_msg)

    log.info(f"Starting copy of {candidate.path} to {destination} (source modified {candidate.modified:%Y-%m-%d %H:%M:%S})")
    copy_backup(candidate.path, destination)
    log.info(f"✓ Copy completed: {destination} (source modified {candidate.modified:%Y-%m-%d %H:%M:%S})")
    return destination
