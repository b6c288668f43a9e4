"""Running T-SQL against a server instance through sqlcmd or pyodbc.

Both executors share one interface and return an ExecutionResult; a nonzero
exit code is reported in the log but never raised, so callers decide whether
a failure is fatal.
"""
import os
import re
import shutil
import subprocess
import tempfile
import traceback
from dataclasses import dataclass

from dbrefresh.errors import ProcessError, ToolNotFound

_BATCH_SEPARATOR = re.compile(r'^[ \t]*GO[ \t]*$', re.IGNORECASE | re.MULTILINE)
_VARIABLE = re.compile(r'\$\((\w+)\)')
_ODBC_PREFIX = re.compile(r'^(\[[^\]]*\])+')


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self):
        return self.exit_code == 0

    def lines(self):
        """Non-blank stdout lines, stripped."""
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]

    def scalar(self):
        lines = self.lines()
        return lines[0] if lines else None


def _escape_sql_literal(s: str) -> str:
    """Escape single quotes for SQL string literals and ensure it's a str."""
    if s is None:
        return ''
    return str(s).replace("'", "''")


def quote_name(name: str) -> str:
    """Bracket-quote an identifier for T-SQL."""
    return '[' + str(name).replace(']', ']]') + ']'


def substitute_variables(text, variables):
    """Replace sqlcmd-style $(Name) references; unknown names are left alone."""
    if not variables:
        return text
    return _VARIABLE.sub(lambda m: str(variables.get(m.group(1), m.group(0))), text)


def split_batches(text):
    return [batch.strip() for batch in _BATCH_SEPARATOR.split(text) if batch.strip()]


class SqlExecutor:
    """Common interface; subclasses implement _run."""

    def __init__(self, log, username=None, password=None):
        self.log = log
        self.username = username
        self.password = password

    def execute(self, server, query=None, script=None, database=None,
                variables=None, timeout=None, echo=True):
        if (query is None) == (script is None):
            raise ValueError("Exactly one of query or script is required")

        target = f"script {script}" if script is not None else "query"
        self.log.debug(f"Executing {target} on {server}" + (f" (database {database})" if database else ""))
        if query is not None:
            self.log.debug(f"Query: {query}")

        result = self._run(server, query, script, database, variables or {}, timeout)
        self._report(result, target, echo)
        return result

    def _run(self, server, query, script, database, variables, timeout):
        raise NotImplementedError

    def _report(self, result, target, echo):
        if echo:
            for line in result.lines():
                self.log.info(line)
        for line in result.stderr.splitlines():
            if line.strip():
                self.log.warning(line.strip())
        if not result.ok:
            self.log.error(f"{target} exited with code {result.exit_code}")


class SqlCmdExecutor(SqlExecutor):
    """Runs statements through the sqlcmd command-line utility."""

    def __init__(self, log, tool='sqlcmd', username=None, password=None):
        super().__init__(log, username, password)
        self.tool = tool

    def locate(self):
        if os.path.isabs(self.tool) and os.path.isfile(self.tool):
            return self.tool
        found = shutil.which(self.tool)
        if not found:
            error_msg = f"SQL utility '{self.tool}' not found on PATH"
            self.log.error(error_msg)
            raise ToolNotFound(error_msg)
        return found

    def build_command(self, tool, server, query=None, script=None, database=None,
                      variables=None, timeout=None):
        args = [tool, '-S', server]
        if database:
            args += ['-d', database]
        if self.username:
            args += ['-U', self.username, '-P', self.password or '']
        else:
            args.append('-E')
        # -b: nonzero exit on SQL errors; -W -h -1: bare output for parsing
        args += ['-b', '-W', '-h', '-1']
        if timeout is not None:
            args += ['-t', str(int(timeout))]
        if query is not None:
            args += ['-Q', query]
        else:
            args += ['-i', str(script)]
        for name, value in (variables or {}).items():
            args += ['-v', f"{name}={value}"]
        return args

    def _masked(self, args):
        if '-P' not in args:
            return args
        masked = list(args)
        masked[masked.index('-P') + 1] = '****'
        return masked

    def _run(self, server, query, script, database, variables, timeout):
        tool = self.locate()
        args = self.build_command(tool, server, query, script, database, variables, timeout)
        self.log.debug(f"Command: {' '.join(self._masked(args))}")

        out_path = err_path = None
        try:
            out_fd, out_path = tempfile.mkstemp(prefix='sqlcmd_', suffix='.out')
            os.close(out_fd)
            err_fd, err_path = tempfile.mkstemp(prefix='sqlcmd_', suffix='.err')
            os.close(err_fd)
            with open(out_path, 'wb') as out_fh, open(err_path, 'wb') as err_fh:
                completed = subprocess.run(args, stdout=out_fh, stderr=err_fh,
                                           stdin=subprocess.DEVNULL)
            with open(out_path, 'rb') as fh:
                stdout = fh.read().decode('utf-8', errors='replace')
            with open(err_path, 'rb') as fh:
                stderr = fh.read().decode('utf-8', errors='replace')
            return ExecutionResult(completed.returncode, stdout, stderr)
        except FileNotFoundError as e:
            error_msg = f"SQL utility could not be started: {e}"
            self.log.error(error_msg)
            raise ToolNotFound(error_msg) from e
        except (OSError, subprocess.SubprocessError) as e:
            error_msg = f"Error invoking {tool}: {str(e)}"
            self.log.error(error_msg)
            self.log.debug(traceback.format_exc())
            raise ProcessError(error_msg) from e
        finally:
            for path in (out_path, err_path):
                if path is None:
                    continue
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass


class OdbcExecutor(SqlExecutor):
    """Runs statements over a pyodbc connection."""

    def __init__(self, log, driver='ODBC Driver 17 for SQL Server', username=None, password=None):
        super().__init__(log, username, password)
        self.driver = driver

    def _get_connection_string(self, server, database=None):
        """Generate connection string based on configuration."""
        if self.username:
            conn_str = f"DRIVER={{{self.driver}}};SERVER={server};UID={self.username};PWD={self.password}"
        else:
            conn_str = f"DRIVER={{{self.driver}}};SERVER={server};Trusted_Connection=yes;"
        if database:
            conn_str = conn_str.rstrip(';') + f";DATABASE={database};"
        return conn_str

    def _run(self, server, query, script, database, variables, timeout):
        try:
            import pyodbc
        except ImportError as e:
            error_msg = f"pyodbc is unavailable: {e}"
            self.log.error(error_msg)
            raise ToolNotFound(error_msg) from e

        if script is not None:
            with open(script, encoding='utf-8-sig') as fh:
                text = fh.read()
        else:
            text = query
        batches = split_batches(substitute_variables(text, variables))

        output = []
        conn = None
        cursor = None
        try:
            conn = pyodbc.connect(self._get_connection_string(server, database), autocommit=True)
            if timeout is not None:
                conn.timeout = int(timeout)
            cursor = conn.cursor()
            for batch in batches:
                cursor.execute(batch)
                while True:
                    for _, message in getattr(cursor, 'messages', None) or []:
                        output.append(_ODBC_PREFIX.sub('', str(message)))
                    if cursor.description:
                        for row in cursor.fetchall():
                            output.append('\t'.join('' if v is None else str(v) for v in row))
                    if not cursor.nextset():
                        break
            return ExecutionResult(0, '\n'.join(output), '')
        except pyodbc.Error as e:
            self.log.debug(traceback.format_exc())
            return ExecutionResult(1, '\n'.join(output), str(e))
        except Exception as e:
            error_msg = f"Unexpected error executing SQL: {str(e)}"
            self.log.error(error_msg)
            self.log.debug(traceback.format_exc())
            raise ProcessError(error_msg) from e
        finally:
            try:
                if cursor:
                    cursor.close()
                if conn:
                    conn.close()
            except Exception as e:
                self.log.warning(f"Error closing connection: {str(e)}")


def make_executor(kind, log, username=None, password=None, sqlcmd_path='sqlcmd',
                  driver='ODBC Driver 17 for SQL Server'):
    if kind == 'odbc':
        return OdbcExecutor(log, driver=driver, username=username, password=password)
    return SqlCmdExecutor(log, tool=sqlcmd_path, username=username, password=password)
