import itertools
import logging
import os
import sys
from datetime import datetime

LOG_FORMAT = '%(asctime)s %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
DEFAULT_LOG_DIR = 'logs'

_run_ids = itertools.count(1)


class RunLog:
    """Timestamped log for one refresh run, written to the console and a sink file.

    The first sink used by the run (explicit or generated) becomes the default
    for every later call that does not name one.
    """

    def __init__(self, log_dir=DEFAULT_LOG_DIR, sink=None, verbose=False, stream=None):
        self.log_dir = log_dir
        self.verbose = verbose
        self.default_sink = None
        self._formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        self._file_handlers = {}

        self._logger = logging.getLogger(f"dbrefresh.run.{next(_run_ids)}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        self._console = logging.StreamHandler(stream or sys.stdout)
        self._console.setLevel(logging.DEBUG if verbose else logging.INFO)
        self._console.setFormatter(self._formatter)
        self._logger.addHandler(self._console)

        if sink:
            self.default_sink = os.path.abspath(sink)

    def _new_sink(self):
        os.makedirs(self.log_dir, exist_ok=True)
        name = f"Refresh_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        return os.path.abspath(os.path.join(self.log_dir, name))

    def _open_sink(self, sink):
        if sink in self._file_handlers:
            return
        parent = os.path.dirname(sink)
        if parent:
            os.makedirs(parent, exist_ok=True)
        handler = logging.FileHandler(sink, mode='a', encoding='utf-8')
        handler.setLevel(logging.DEBUG if self.verbose else logging.INFO)
        handler.setFormatter(self._formatter)
        # each record goes to the one sink it names
        handler.addFilter(lambda record, path=sink: record.sink == path)
        self._logger.addHandler(handler)
        self._file_handlers[sink] = handler

    def log(self, message, sink=None, level=logging.INFO):
        if sink is None:
            if self.default_sink is None:
                self.default_sink = self._new_sink()
            sink = self.default_sink
        else:
            sink = os.path.abspath(sink)
            if self.default_sink is None:
                self.default_sink = sink

        self._open_sink(sink)
        self._logger.log(level, str(message), extra={'sink': sink})

    def debug(self, message, sink=None):
        self.log(message, sink, logging.DEBUG)

    def info(self, message, sink=None):
        self.log(message, sink, logging.INFO)

    def warning(self, message, sink=None):
        self.log(message, sink, logging.WARNING)

    def error(self, message, sink=None):
        self.log(message, sink, logging.ERROR)

    def banner(self, title, char="="):
        self.info(char * 80)
        self.info(title)
        self.info(char * 80)

    def close(self):
        for handler in self._file_handlers.values():
            self._logger.removeHandler(handler)
            handler.close()
        self._file_handlers.clear()
