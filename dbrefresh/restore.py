import ntpath
import posixpath
from collections import namedtuple

from dbrefresh.errors import RestoreError
from dbrefresh.sqlexec import _escape_sql_literal, quote_name

WORKING_DATABASE = 'SITSRefresh'
DATA_FILES = 4
STATS_INTERVAL = 5

MoveEntry = namedtuple('MoveEntry', ['logical_name', 'physical_path'])


def _server_path(root, *parts):
    """Join using the separator style of root, which lives on the database server."""
    module = ntpath if '\\' in root or ntpath.splitdrive(root)[0] else posixpath
    return module.join(root, *parts)


def build_move_map(environment, data_root, log_root, logical_prefix='SITS', data_files=DATA_FILES):
    """Relocation entries for the restore: data_files data files then one log file."""
    entries = []
    for i in range(1, data_files + 1):
        ext = 'mdf' if i == 1 else 'ndf'
        entries.append(MoveEntry(f"{logical_prefix}_Data{i}",
                                 _server_path(data_root, environment, f"Refresh_Data{i}.{ext}")))
    entries.append(MoveEntry(f"{logical_prefix}_Log",
                             _server_path(log_root, environment, "Refresh_Log.ldf")))
    return entries


def build_restore_statement(database, backup_path, move_map, stats_interval=STATS_INTERVAL):
    with_opts = ["FILE = 1"]
    with_opts += [f"MOVE '{_escape_sql_literal(e.logical_name)}' TO '{_escape_sql_literal(e.physical_path)}'"
                  for e in move_map]
    with_opts.append("REPLACE")
    with_opts.append(f"STATS = {int(stats_interval)}")
    return (f"RESTORE DATABASE {quote_name(database)} "
            f"FROM DISK = '{_escape_sql_literal(backup_path)}' "
            f"WITH {', '.join(with_opts)}")


class RestoreCoordinator:
    def __init__(self, executor, lifecycle, log):
        self.executor = executor
        self.lifecycle = lifecycle
        self.log = log

    def restore(self, database, backup_path, move_map, server):
        """Restore backup_path as database, relocating files per move_map."""
        self.log.banner(f"RESTORING {database} FROM {backup_path}")
        for entry in move_map:
            self.log.info(f"  {entry.logical_name} -> {entry.physical_path}")

        restore_sql = build_restore_statement(database, backup_path, move_map)
        self.log.debug(restore_sql)
        self.log.info("Executing RESTORE statement (this may take a while)...")
        result = self.executor.execute(server, query=restore_sql, database='master', timeout=0)
        if not result.ok:
            error_msg = f"Restore of {database} failed (exit code {result.exit_code})"
            self.log.error(error_msg)
            raise RestoreError(error_msg)
        self.log.info(f"✓ Restore of {database} completed")

    def verify_restored(self, database):
        state = self.lifecycle.database_state(database)
        if state != 'ONLINE':
            error_msg = f"Database {database} is {state or 'missing'} after restore"
            self.log.error(error_msg)
            raise RestoreError(error_msg)
        self.log.info(f"✓ Database state: {state}")
