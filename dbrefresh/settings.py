"""Refresh configuration: built-in defaults overlaid with a JSON file."""
import json
from collections import namedtuple
from datetime import timedelta

from dbrefresh.errors import ConfigError
from dbrefresh.file_rename import FileMapping

# ================= CONFIGURATION =================

DEFAULTS = {
    'server': None,
    'environment': None,
    'current_database': None,
    'old_database': None,
    'working_database': 'SITSRefresh',
    'source_backup_folder': None,
    'target_backup_folder': None,
    'backup_file_name': 'SITSRefresh.bak',
    'data_root': None,
    'log_root': None,
    'data_files': 4,
    'logical_prefix': 'SITS',
    'log_dir': 'logs',
    'use_windows_auth': True,
    'username': None,
    'password': None,
    'executor': 'sqlcmd',
    'sqlcmd_path': 'sqlcmd',
    'odbc_driver': 'ODBC Driver 17 for SQL Server',
    'extended_servers': ['WALTHAM'],
    'retire_files': [],
    'promote_files': [],
    'metadata_first': True,
    'max_backup_age_hours': 20,
}

REQUIRED = ('server', 'environment', 'current_database', 'source_backup_folder',
            'target_backup_folder', 'data_root')

RefreshTarget = namedtuple('RefreshTarget', ['current_database', 'old_database', 'server'])


def _mapping(values, key):
    try:
        return FileMapping(tuple(entry) for entry in values)
    except TypeError as e:
        raise ConfigError(f"'{key}' must be a list of [logical, source, destination] entries: {e}") from e


class RefreshConfig:
    def __init__(self, values):
        self.values = dict(DEFAULTS)
        self.values.update(values)

        missing = [key for key in REQUIRED if not self.values.get(key)]
        if missing:
            raise ConfigError(f"Missing configuration key(s): {', '.join(missing)}")
        if not self.values['use_windows_auth'] and not self.values['username']:
            raise ConfigError("username is required when use_windows_auth is false")
        if not self.values['old_database']:
            self.values['old_database'] = f"{self.values['current_database']}Old"
        if not self.values['log_root']:
            self.values['log_root'] = self.values['data_root']

        self.retire_files = _mapping(self.values['retire_files'], 'retire_files')
        self.promote_files = _mapping(self.values['promote_files'], 'promote_files')

    def __getitem__(self, key):
        return self.values[key]

    def get(self, key, default=None):
        return self.values.get(key, default)

    @property
    def target(self):
        return RefreshTarget(self['current_database'], self['old_database'], self['server'])

    @property
    def max_backup_age(self):
        return timedelta(hours=float(self['max_backup_age_hours']))

    @property
    def credentials(self):
        if self['use_windows_auth']:
            return None, None
        return self['username'], self['password']


def load_config(path):
    try:
        with open(path, encoding='utf-8') as fh:
            values = json.load(fh)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(values, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    unknown = sorted(set(values) - set(DEFAULTS))
    if unknown:
        raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")
    return RefreshConfig(values)
