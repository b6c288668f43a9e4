import io

import pytest

from dbrefresh.runlog import RunLog
from dbrefresh.sqlexec import ExecutionResult


class FakeExecutor:
    """Executor double: records calls and answers from canned rules.

    Each rule is (substring, result). The first rule whose substring occurs in
    the query (or script path) answers; a list of results is consumed in order,
    repeating the last one.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.calls = []

    def on(self, substring, *results):
        self.rules.append((substring, list(results)))
        return self

    def execute(self, server, query=None, script=None, database=None,
                variables=None, timeout=None, echo=True):
        self.calls.append({
            'server': server, 'query': query, 'script': script, 'database': database,
            'variables': variables, 'timeout': timeout,
        })
        text = query if query is not None else str(script)
        for substring, results in self.rules:
            if substring in text:
                if isinstance(results, list):
                    return results.pop(0) if len(results) > 1 else results[0]
                return results
        return ExecutionResult(0)

    def queries(self, substring=''):
        return [c['query'] for c in self.calls if c['query'] and substring in c['query']]


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def console():
    return io.StringIO()


@pytest.fixture
def run_log(tmp_path, console):
    log = RunLog(log_dir=str(tmp_path / 'logs'), stream=console)
    yield log
    log.close()


@pytest.fixture
def read_log(run_log):
    def read():
        with open(run_log.default_sink, encoding="utf-8") as fh:
            return fh.read()
    return read
