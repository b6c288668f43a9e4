from dbrefresh.errors import LifecycleError
from dbrefresh.sqlexec import _escape_sql_literal, quote_name

KILL_SESSIONS_SQL = """SET NOCOUNT ON;
DECLARE @kill NVARCHAR(MAX) = N'';
SELECT @kill = @kill + N'KILL ' + CONVERT(NVARCHAR(10), session_id) + N';'
FROM sys.dm_exec_sessions
WHERE database_id = DB_ID(N'{name}') AND session_id <> @@SPID;
IF LEN(@kill) > 0 EXEC sp_executesql @kill;"""


class DatabaseLifecycleManager:
    """Moves a database between MULTI_USER, SINGLE_USER, OFFLINE and ONLINE."""

    def __init__(self, executor, server, log):
        self.executor = executor
        self.server = server
        self.log = log

    def _run(self, sql, action, database='master'):
        result = self.executor.execute(self.server, query=sql, database=database)
        if not result.ok:
            error_msg = f"Failed to {action} (exit code {result.exit_code})"
            self.log.error(error_msg)
            raise LifecycleError(error_msg)
        return result

    def _query(self, sql):
        return self.executor.execute(self.server, query=sql, database='master', echo=False)

    def database_exists(self, name):
        result = self._query(
            f"SET NOCOUNT ON; SELECT COUNT(*) FROM sys.databases WHERE name = N'{_escape_sql_literal(name)}'"
        )
        if not result.ok:
            error_msg = f"Could not check whether database '{name}' exists"
            self.log.error(error_msg)
            raise LifecycleError(error_msg)
        return (result.scalar() or '0') != '0'

    def database_state(self, name):
        result = self._query(
            f"SET NOCOUNT ON; SELECT state_desc FROM sys.databases WHERE name = N'{_escape_sql_literal(name)}'"
        )
        return result.scalar() if result.ok else None

    def file_owner(self, physical_path, exclude=None):
        """Name of the database whose file is registered at physical_path, if any."""
        sql = ("SET NOCOUNT ON; SELECT TOP 1 DB_NAME(database_id) FROM sys.master_files "
               f"WHERE physical_name = N'{_escape_sql_literal(physical_path)}'")
        if exclude:
            sql += f" AND database_id <> ISNULL(DB_ID(N'{_escape_sql_literal(exclude)}'), 0)"
        result = self._query(sql)
        if not result.ok:
            return None
        return result.scalar()

    def drop_connections(self, name):
        self.log.info(f"Killing all connections to database: {name}")
        self._run(KILL_SESSIONS_SQL.format(name=_escape_sql_literal(name)),
                  f"kill connections to {name}")

    def take_offline(self, name):
        self.drop_connections(name)
        self.log.info(f"Setting {name} to SINGLE_USER mode...")
        self._run(f"ALTER DATABASE {quote_name(name)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE",
                  f"set {name} SINGLE_USER")
        self.log.info(f"Taking {name} OFFLINE...")
        self._run(f"ALTER DATABASE {quote_name(name)} SET OFFLINE", f"take {name} OFFLINE")
        self.log.info(f"✓ {name} is OFFLINE")

    def bring_online_and_rename(self, name, new_name=None):
        reached = 'OFFLINE'
        try:
            self.log.info(f"Bringing {name} ONLINE...")
            self._run(f"ALTER DATABASE {quote_name(name)} SET ONLINE", f"bring {name} ONLINE")
            reached = 'ONLINE (SINGLE_USER)'
            self.log.info(f"Setting {name} to MULTI_USER mode...")
            self._run(f"ALTER DATABASE {quote_name(name)} SET MULTI_USER WITH ROLLBACK IMMEDIATE",
                      f"set {name} MULTI_USER")
            reached = 'ONLINE (MULTI_USER)'
            if new_name and new_name != name:
                self.log.info(f"Renaming database {name} to {new_name}...")
                self._run(f"ALTER DATABASE {quote_name(name)} MODIFY NAME = {quote_name(new_name)}",
                          f"rename {name} to {new_name}")
                reached = f'RENAMED to {new_name}'
        except LifecycleError:
            self.log.error(f"Database {name} left in state: {reached}")
            raise
        self.log.info(f"✓ Database {new_name or name} is {reached}")

    def drop_database(self, name):
        self.log.warning(f"Dropping database {name}")
        state = self.database_state(name)
        if state == 'OFFLINE':
            # DROP leaves the files of an offline database on disk
            self._run(f"ALTER DATABASE {quote_name(name)} SET ONLINE", f"bring {name} ONLINE")
            state = 'ONLINE'
        if state == 'ONLINE':
            self.drop_connections(name)
            self._run(f"ALTER DATABASE {quote_name(name)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE",
                      f"set {name} SINGLE_USER")
        self._run(f"DROP DATABASE {quote_name(name)}", f"drop database {name}")
        self.log.info(f"✓ Database {name} dropped")

    def modify_file(self, name, logical_name, physical_path):
        """Point a logical file at a new path in the catalog. Returns the ExecutionResult."""
        self.log.info(f"Updating {name} file {logical_name} -> {physical_path}")
        return self.executor.execute(
            self.server,
            query=(f"ALTER DATABASE {quote_name(name)} MODIFY FILE "
                   f"(NAME = N'{_escape_sql_literal(logical_name)}', "
                   f"FILENAME = N'{_escape_sql_literal(physical_path)}')"),
            database='master',
        )
