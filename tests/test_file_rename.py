"""Tests for dbrefresh.file_rename — rename ordering, conflict recovery, validation."""
import os

import pytest

from dbrefresh.errors import ConfigError, ConflictError, LifecycleError, RenameError
from dbrefresh.file_rename import (
    AutoPolicy, ConsolePolicy, FileMapping, FileRenameCoordinator, validate_destinations,
)
from dbrefresh.lifecycle import DatabaseLifecycleManager
from dbrefresh.sqlexec import ExecutionResult

FAIL = ExecutionResult(1, '', 'Msg 5170, cannot create file')


class RecordingPolicy:
    def __init__(self, answer):
        self.answer = answer
        self.asked = []

    def __call__(self, owner, path):
        self.asked.append((owner, path))
        return self.answer


@pytest.fixture
def mapping(tmp_path):
    entries = []
    for logical, name in (('SITS_Data1', 'Data1.mdf'), ('SITS_Data2', 'Data2.ndf'), ('SITS_Log', 'Log.ldf')):
        source = tmp_path / f"SISB_{name}"
        source.write_bytes(b"page")
        entries.append((logical, str(source), str(tmp_path / f"SISBOld_{name}")))
    return FileMapping(entries)


def coordinator(executor, run_log, policy=None):
    lifecycle = DatabaseLifecycleManager(executor, 'SRV', run_log)
    return FileRenameCoordinator(lifecycle, run_log, policy or AutoPolicy(False))


def statement_kinds(executor):
    kinds = []
    for call in executor.calls:
        query = call['query']
        for marker in ('MODIFY FILE', 'SET OFFLINE', 'SET ONLINE', 'MODIFY NAME', 'DROP DATABASE'):
            if marker in query:
                kinds.append(marker)
    return kinds


# ── FileMapping ───────────────────────────────────────────────────────────────

class TestFileMapping:
    def test_keeps_order(self, mapping):
        assert [e.logical_name for e in mapping] == ['SITS_Data1', 'SITS_Data2', 'SITS_Log']
        assert len(mapping) == 3

    def test_duplicate_destination_rejected(self):
        with pytest.raises(ConfigError):
            FileMapping([('a', '/x/a.mdf', '/y/same.mdf'), ('b', '/x/b.ndf', '/y/same.mdf')])


# ── Validation ────────────────────────────────────────────────────────────────

class TestValidateDestinations:
    def test_all_found(self, tmp_path, run_log, read_log):
        paths = []
        for name in ('a', 'b', 'c'):
            path = tmp_path / name
            path.write_text(name)
            paths.append(str(path))
        found, missing = validate_destinations(paths, run_log)
        assert found == paths
        assert missing == []
        text = read_log()
        assert all(f"found: {p}" in text for p in paths)

    def test_reports_exactly_missing_subset(self, tmp_path, run_log, read_log):
        present = tmp_path / 'b'
        present.write_text('b')
        paths = [str(tmp_path / 'a'), str(present), str(tmp_path / 'c')]
        with pytest.raises(RenameError) as exc:
            validate_destinations(paths, run_log)
        assert exc.value.missing == [paths[0], paths[2]]
        text = read_log()
        assert f"missing: {paths[0]}" in text
        assert f"missing: {paths[2]}" in text
        assert f"missing: {paths[1]}" not in text


# ── Rename sequence ───────────────────────────────────────────────────────────

class TestRenameDatabaseFiles:
    def test_metadata_first_order(self, executor, run_log, mapping):
        coordinator(executor, run_log).rename_database_files('SISB', mapping, new_name='SISBOld')
        assert statement_kinds(executor) == ['MODIFY FILE'] * 3 + ['SET OFFLINE', 'SET ONLINE', 'MODIFY NAME']
        assert all(os.path.exists(p) for p in mapping.destinations)
        assert not any(os.path.exists(p) for p in mapping.sources)

    def test_offline_first_order(self, executor, run_log, mapping):
        coordinator(executor, run_log).rename_database_files('SISB', mapping, metadata_first=False)
        assert statement_kinds(executor) == ['SET OFFLINE'] + ['MODIFY FILE'] * 3 + ['SET ONLINE']

    def test_missing_source_aborts_before_any_change(self, executor, run_log, mapping):
        os.remove(mapping.sources[1])
        with pytest.raises(RenameError) as exc:
            coordinator(executor, run_log).rename_database_files('SISB', mapping)
        assert exc.value.missing == [mapping.sources[1]]
        assert executor.calls == []

    def test_disk_rename_failure_is_fatal(self, executor, run_log, mapping):
        def broken(source, destination):
            raise PermissionError("locked")

        lifecycle = DatabaseLifecycleManager(executor, 'SRV', run_log)
        renamer = FileRenameCoordinator(lifecycle, run_log, AutoPolicy(False), rename_file=broken)
        with pytest.raises(RenameError):
            renamer.rename_database_files('SISB', mapping)
        assert 'SET ONLINE' not in statement_kinds(executor)

    def test_silent_partial_rename_detected(self, executor, run_log, mapping):
        def lossy(source, destination):
            if 'Data2' not in source:
                os.rename(source, destination)

        lifecycle = DatabaseLifecycleManager(executor, 'SRV', run_log)
        renamer = FileRenameCoordinator(lifecycle, run_log, AutoPolicy(False), rename_file=lossy)
        with pytest.raises(RenameError) as exc:
            renamer.rename_database_files('SISB', mapping)
        assert exc.value.missing == [mapping.destinations[1]]
        assert 'SET ONLINE' not in statement_kinds(executor)

    def test_existing_destination_not_overwritten(self, executor, run_log, mapping):
        with open(mapping.destinations[0], 'wb') as fh:
            fh.write(b"other")
        with pytest.raises(RenameError):
            coordinator(executor, run_log).rename_database_files('SISB', mapping)
        with open(mapping.destinations[0], 'rb') as fh:
            assert fh.read() == b"other"

    def test_offline_failure_stops_file_operations(self, executor, run_log, mapping):
        executor.on('SET OFFLINE', FAIL)
        with pytest.raises(LifecycleError):
            coordinator(executor, run_log).rename_database_files('SISB', mapping)
        assert all(os.path.exists(p) for p in mapping.sources)


# ── Conflict recovery ─────────────────────────────────────────────────────────

class TestConflicts:
    def test_confirmed_conflict_drops_owner_and_retries_once(self, executor, run_log, mapping, read_log):
        executor.on('MODIFY FILE', FAIL, ExecutionResult(0))
        executor.on('sys.master_files', ExecutionResult(0, 'SISBOld\n'))
        policy = RecordingPolicy(True)
        renamer = coordinator(executor, run_log, policy)

        attempts = renamer.update_metadata('SISB', mapping.entries[0])

        assert attempts == 2
        assert policy.asked == [('SISBOld', mapping.destinations[0])]
        assert executor.queries('DROP DATABASE [SISBOld]')
        assert len(executor.queries('MODIFY FILE')) == 2
        assert "Drop of 'SISBOld' confirmed" in read_log()

    def test_declined_conflict_is_fatal(self, executor, run_log, mapping):
        executor.on('MODIFY FILE', FAIL)
        executor.on('sys.master_files', ExecutionResult(0, 'SISBOld\n'))
        renamer = coordinator(executor, run_log, RecordingPolicy(False))

        with pytest.raises(ConflictError) as exc:
            renamer.rename_database_files('SISB', mapping)

        assert exc.value.owner == 'SISBOld'
        assert not executor.queries('DROP DATABASE')
        assert len(executor.queries('MODIFY FILE')) == 1
        assert not executor.queries('SET OFFLINE')

    def test_second_conflict_is_fatal(self, executor, run_log, mapping):
        executor.on('MODIFY FILE', FAIL)
        executor.on('sys.master_files', ExecutionResult(0, 'SISBOld\n'))
        policy = RecordingPolicy(True)
        renamer = coordinator(executor, run_log, policy)

        with pytest.raises(RenameError):
            renamer.update_metadata('SISB', mapping.entries[0])

        assert len(executor.queries('MODIFY FILE')) == 2
        assert len(policy.asked) == 1

    def test_failure_without_owner_is_fatal(self, executor, run_log, mapping):
        executor.on('MODIFY FILE', FAIL)
        executor.on('sys.master_files', ExecutionResult(0, ''))
        policy = RecordingPolicy(True)
        with pytest.raises(RenameError):
            coordinator(executor, run_log, policy).update_metadata('SISB', mapping.entries[0])
        assert policy.asked == []
        assert len(executor.queries('MODIFY FILE')) == 1


# ── Policies ──────────────────────────────────────────────────────────────────

class TestPolicies:
    def test_console_policy_yes(self):
        prompts = []
        policy = ConsolePolicy(prompt=lambda text: prompts.append(text) or ' Y ')
        assert policy('SISBOld', '/data/x.mdf') is True
        assert 'SISBOld' in prompts[0]

    def test_console_policy_no(self):
        assert ConsolePolicy(prompt=lambda text: 'n')('SISBOld', '/data/x.mdf') is False

    def test_auto_policy(self):
        assert AutoPolicy(True)('a', 'b') is True
        assert AutoPolicy(False)('a', 'b') is False
