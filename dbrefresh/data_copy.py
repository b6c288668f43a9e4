import os

from dbrefresh.errors import DataCopyError
from dbrefresh.sqlexec import _escape_sql_literal

SQL_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'sql')
DATA_SCRIPT = os.path.join(SQL_DIR, 'copy_data.sql')
USERS_SCRIPT = os.path.join(SQL_DIR, 'refresh_users.sql')
SEQUENCES_SCRIPT = os.path.join(SQL_DIR, 'copy_sequences.sql')


class DataCopyOrchestrator:
    """Runs the copy scripts that carry data from the old database into the refreshed one."""

    def __init__(self, executor, server, log, extended_servers=(), server_name=None):
        self.executor = executor
        self.server = server
        self.log = log
        self.extended_servers = {s.upper() for s in extended_servers}
        self._server_name = server_name

    @property
    def server_name(self):
        """The target server's own name, as @@SERVERNAME reports it."""
        if self._server_name is None:
            result = self.executor.execute(self.server, query="SET NOCOUNT ON; SELECT @@SERVERNAME",
                                           database='master', echo=False)
            name = result.scalar() if result.ok else None
            if not name:
                name = self.server
                self.log.warning(f"Could not read @@SERVERNAME, using configured server name {name}")
            self._server_name = name
        return self._server_name

    def is_extended_environment(self, server_name=None):
        return (server_name or self.server_name).upper() in self.extended_servers

    def _run_script(self, script, variables, description):
        self.log.info("-" * 60)
        self.log.info(description)
        if not os.path.isfile(script):
            error_msg = f"SQL script not found: {script}"
            self.log.error(error_msg)
            raise DataCopyError(error_msg)

        result = self.executor.execute(self.server, script=script, database='master',
                                       variables=variables, timeout=0, echo=False)
        for line in result.stdout.splitlines():
            if line.strip():
                self.log.info(line.strip())
        if not result.ok:
            error_msg = f"{description} failed (exit code {result.exit_code})"
            self.log.error(error_msg)
            raise DataCopyError(error_msg)
        self.log.info(f"✓ {description} completed")

    def old_database_rows(self, old_database):
        result = self.executor.execute(
            self.server,
            query=f"SET NOCOUNT ON; SELECT COUNT(*) FROM sys.databases WHERE name = N'{_escape_sql_literal(old_database)}'",
            database='master',
            echo=False,
        )
        if not result.ok:
            error_msg = f"Could not probe for database {old_database}"
            self.log.error(error_msg)
            raise DataCopyError(error_msg)
        return int(result.scalar() or 0)

    def refresh_users(self, old_database, refreshed_database):
        self._run_script(USERS_SCRIPT,
                         {'OldDatabaseName': old_database, 'RefreshDatabaseName': refreshed_database},
                         f"Refreshing users of {refreshed_database} from {old_database}")

    def copy_data(self, old_database, refreshed_database):
        extended = self.is_extended_environment()
        if extended:
            self.log.info(f"Server {self.server_name} uses the extended table set")
        self._run_script(DATA_SCRIPT,
                         {'OldDatabaseName': old_database,
                          'RefreshDatabaseName': refreshed_database,
                          'ExtendedTables': 1 if extended else 0},
                         f"Copying data from {old_database} into {refreshed_database}")

    def copy_sequences(self, old_database, refreshed_database):
        if self.old_database_rows(old_database) == 0:
            self.log.warning(f"Database {old_database} not found, skipping sequence copy")
            return False
        self._copy_sequences(old_database, refreshed_database)
        return True

    def _copy_sequences(self, old_database, refreshed_database):
        self._run_script(SEQUENCES_SCRIPT,
                         {'OldDatabaseName': old_database, 'RefreshDatabaseName': refreshed_database},
                         f"Copying sequences from {old_database} into {refreshed_database}")

    def run(self, old_database, refreshed_database):
        """Users, then data, then sequences. Skipped entirely when the old database is absent."""
        self.log.banner("COPYING DATA")
        if self.old_database_rows(old_database) == 0:
            self.log.warning(f"Database {old_database} not found, skipping data copy")
            return False
        self.refresh_users(old_database, refreshed_database)
        self.copy_data(old_database, refreshed_database)
        self._copy_sequences(old_database, refreshed_database)
        return True
