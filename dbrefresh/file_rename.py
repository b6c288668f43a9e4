"""Renaming a database's files, both in the catalog and on disk.

The catalog update for a file can collide with another database that already
owns the destination path. A decision policy is asked whether that database
may be dropped; if so the update is retried once.
"""
import os
from collections import namedtuple

from dbrefresh.errors import ConfigError, ConflictError, RenameError

FileEntry = namedtuple('FileEntry', ['logical_name', 'source', 'destination'])


class FileMapping:
    """Ordered (logical name, source path, destination path) entries."""

    def __init__(self, entries):
        self.entries = tuple(FileEntry(*entry) for entry in entries)
        destinations = [os.path.normcase(e.destination) for e in self.entries]
        if len(set(destinations)) != len(destinations):
            raise ConfigError("File mapping has duplicate destination paths")

    def __iter__(self):
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)

    @property
    def sources(self):
        return [e.source for e in self.entries]

    @property
    def destinations(self):
        return [e.destination for e in self.entries]


class ConsolePolicy:
    """Ask the operator on the console before dropping a conflicting database."""

    def __init__(self, prompt=input):
        self.prompt = prompt

    def __call__(self, owner, path):
        answer = self.prompt(f"\n⚠ {path} is in use by database '{owner}'. Drop {owner} and retry? (y/n): ")
        return answer.strip().lower() == 'y'


class AutoPolicy:
    """Answer every conflict the same way, for unattended runs."""

    def __init__(self, allow):
        self.allow = allow

    def __call__(self, owner, path):
        return self.allow


def validate_destinations(paths, log):
    """Split paths into (found, missing) in input order; raise if any are missing."""
    found = [p for p in paths if os.path.exists(p)]
    missing = [p for p in paths if not os.path.exists(p)]
    if missing:
        log.error(f"{len(missing)} of {len(paths)} renamed file(s) missing:")
        for path in missing:
            log.error(f"  missing: {path}")
        raise RenameError(f"Renamed files missing: {', '.join(missing)}", missing=missing)
    log.info(f"✓ All {len(found)} renamed file(s) present:")
    for path in found:
        log.info(f"  found: {path}")
    return found, missing


class FileRenameCoordinator:
    def __init__(self, lifecycle, log, policy, rename_file=os.rename):
        self.lifecycle = lifecycle
        self.log = log
        self.policy = policy
        self.rename_file = rename_file

    def update_metadata(self, database, entry):
        """Repoint one logical file; returns the number of attempts it took."""
        for attempt in (1, 2):
            result = self.lifecycle.modify_file(database, entry.logical_name, entry.destination)
            if result.ok:
                return attempt

            owner = self.lifecycle.file_owner(entry.destination, exclude=database)
            if not owner:
                error_msg = f"Could not update file {entry.logical_name} of {database}"
                self.log.error(error_msg)
                raise RenameError(error_msg)
            if attempt == 2:
                error_msg = f"{entry.destination} is still in use by '{owner}' after dropping it"
                self.log.error(error_msg)
                raise RenameError(error_msg)

            self.log.warning(f"Conflict: {entry.destination} is in use by database '{owner}'")
            if not self.policy(owner, entry.destination):
                error_msg = f"Drop of conflicting database '{owner}' declined"
                self.log.error(error_msg)
                raise ConflictError(error_msg, owner=owner, path=entry.destination)
            self.log.warning(f"Drop of '{owner}' confirmed, retrying {entry.logical_name}")
            self.lifecycle.drop_database(owner)

    def rename_physical(self, mapping):
        for entry in mapping:
            if os.path.exists(entry.destination):
                error_msg = f"Cannot rename {entry.source}: {entry.destination} already exists"
                self.log.error(error_msg)
                raise RenameError(error_msg)
            self.log.info(f"Renaming {entry.source} -> {entry.destination}")
            try:
                self.rename_file(entry.source, entry.destination)
            except OSError as e:
                error_msg = f"Error renaming {entry.source}: {str(e)}"
                self.log.error(error_msg)
                raise RenameError(error_msg) from e

    def check_sources(self, mapping):
        missing = [p for p in mapping.sources if not os.path.exists(p)]
        if missing:
            error_msg = f"Source files missing before rename: {', '.join(missing)}"
            self.log.error(error_msg)
            raise RenameError(error_msg, missing=missing)

    def rename_database_files(self, database, mapping, new_name=None, metadata_first=True):
        """Move every file in mapping and bring the database back, optionally as new_name."""
        self.log.banner(f"RENAMING FILES OF {database}" + (f" (new name {new_name})" if new_name else ""))
        self.check_sources(mapping)

        if metadata_first:
            for entry in mapping:
                self.update_metadata(database, entry)
            self.lifecycle.take_offline(database)
            self.rename_physical(mapping)
        else:
            self.lifecycle.take_offline(database)
            self.rename_physical(mapping)
            for entry in mapping:
                self.update_metadata(database, entry)

        validate_destinations(mapping.destinations, self.log)
        self.lifecycle.bring_online_and_rename(database, new_name)
