import argparse
import os
import sys
import time
import traceback
from datetime import datetime

from dbrefresh.backup_fetch import fetch_latest
from dbrefresh.data_copy import DataCopyOrchestrator
from dbrefresh.errors import RefreshError
from dbrefresh.file_rename import AutoPolicy, ConsolePolicy, FileRenameCoordinator
from dbrefresh.lifecycle import DatabaseLifecycleManager
from dbrefresh.restore import RestoreCoordinator, build_move_map
from dbrefresh.runlog import RunLog
from dbrefresh.settings import load_config
from dbrefresh.sqlexec import make_executor


class RefreshRun:
    """One end-to-end refresh: fetch, restore, retire, promote, copy."""

    def __init__(self, config, executor, log, policy, server_name=None):
        self.config = config
        self.executor = executor
        self.log = log
        self.server = config['server']
        self.lifecycle = DatabaseLifecycleManager(executor, self.server, log)
        self.renamer = FileRenameCoordinator(self.lifecycle, log, policy)
        self.restorer = RestoreCoordinator(executor, self.lifecycle, log)
        self.copier = DataCopyOrchestrator(executor, self.server, log,
                                           extended_servers=config['extended_servers'],
                                           server_name=server_name)

    def log_configuration(self):
        target = self.config.target
        self.log.info("Configuration:")
        self.log.info(f"  Server: {target.server}")
        self.log.info(f"  Environment: {self.config['environment']}")
        self.log.info(f"  Database: {target.current_database} (old: {target.old_database})")
        self.log.info(f"  Working database: {self.config['working_database']}")
        self.log.info(f"  Source folder: {self.config['source_backup_folder']}")
        self.log.info(f"  Target folder: {self.config['target_backup_folder']}")
        self.log.info(f"  Data root: {self.config['data_root']}")

    def fetch(self):
        self.log.banner("FETCHING LATEST BACKUP")
        return fetch_latest(
            self.config['source_backup_folder'],
            self.config['target_backup_folder'],
            self.log,
            file_name=self.config['backup_file_name'],
            max_age=self.config.max_backup_age,
        )

    def restore(self, backup_path):
        working = self.config['working_database']
        move_map = build_move_map(
            self.config['environment'],
            self.config['data_root'],
            self.config['log_root'],
            logical_prefix=self.config['logical_prefix'],
            data_files=int(self.config['data_files']),
        )
        self.restorer.restore(working, backup_path, move_map, self.server)
        self.restorer.verify_restored(working)

    def retire(self):
        target = self.config.target
        if not self.lifecycle.database_exists(target.current_database):
            self.log.warning(f"Database {target.current_database} does not exist, nothing to retire")
            return False
        self.renamer.rename_database_files(
            target.current_database, self.config.retire_files,
            new_name=target.old_database, metadata_first=self.config['metadata_first'],
        )
        return True

    def promote(self):
        self.renamer.rename_database_files(
            self.config['working_database'], self.config.promote_files,
            new_name=self.config.target.current_database,
            metadata_first=self.config['metadata_first'],
        )

    def copy(self):
        target = self.config.target
        self.copier.run(target.old_database, target.current_database)

    def run(self, skip_fetch=False, skip_restore=False, skip_copy=False):
        start_time = time.time()
        try:
            self.log.info("=" * 80)
            self.log.info("DATABASE REFRESH STARTED")
            self.log.info(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
            self.log.info("=" * 80)
            self.log_configuration()

            backup_path = None
            if skip_fetch:
                self.log.info("Skipping backup fetch")
            else:
                backup_path = self.fetch()

            if skip_restore:
                self.log.info("Skipping restore")
            else:
                if backup_path is None:
                    backup_path = os.path.join(self.config['target_backup_folder'], self.config['backup_file_name'])
                self.restore(backup_path)

            self.retire()
            self.promote()

            if skip_copy:
                self.log.info("Skipping data copy")
            else:
                self.copy()

            elapsed_time = time.time() - start_time
            self.log.info("=" * 80)
            self.log.info("✓ REFRESH COMPLETED SUCCESSFULLY")
            self.log.info(f"Total execution time: {elapsed_time/60:.2f} minutes")
            self.log.info("=" * 80)
            return True

        except KeyboardInterrupt:
            self.log.warning("=" * 80)
            self.log.warning("Refresh interrupted by user (Ctrl+C)")
            self.log.warning("=" * 80)
            return False

        except RefreshError as e:
            self.log.error("=" * 80)
            self.log.error("❌ REFRESH ABORTED")
            self.log.error(f"{type(e).__name__}: {str(e)}")
            self.log.error("=" * 80)
            self.log.debug(traceback.format_exc())
            return False

        except Exception as e:
            self.log.error("=" * 80)
            self.log.error("❌ REFRESH ABORTED DUE TO UNEXPECTED ERROR")
            self.log.error(f"Error: {str(e)}")
            self.log.error("=" * 80)
            self.log.debug("Full traceback:")
            self.log.debug(traceback.format_exc())
            return False

        finally:
            elapsed_time = time.time() - start_time
            self.log.info(f"Refresh execution time: {elapsed_time/60:.2f} minutes")
            self.log.info("Refresh finished.")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Refresh a SQL Server environment from the latest backup.")
    parser.add_argument('--config', required=True, help="JSON configuration file")
    parser.add_argument('--log-file', help="log file (default: timestamped file under log_dir)")
    decision = parser.add_mutually_exclusive_group()
    decision.add_argument('--yes', action='store_true',
                          help="skip the confirmation prompt and drop conflicting databases")
    decision.add_argument('--no-confirm', action='store_true',
                          help="never drop conflicting databases; abort instead")
    parser.add_argument('--skip-fetch', action='store_true')
    parser.add_argument('--skip-restore', action='store_true')
    parser.add_argument('--skip-copy', action='store_true')
    parser.add_argument('--verbose', '-v', action='store_true')
    return parser.parse_args(argv)


def main(argv=None, prompt=input):
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except RefreshError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    log = RunLog(log_dir=config['log_dir'], sink=args.log_file, verbose=args.verbose)
    try:
        if args.yes:
            policy = AutoPolicy(True)
        elif args.no_confirm:
            policy = AutoPolicy(False)
        else:
            policy = ConsolePolicy(prompt)

        username, password = config.credentials
        executor = make_executor(config['executor'], log, username=username, password=password,
                                 sqlcmd_path=config['sqlcmd_path'], driver=config['odbc_driver'])
        run = RefreshRun(config, executor, log, policy)

        if not args.yes:
            run.log_configuration()
            verify = prompt("Please verify the configuration before proceeding (y/n): ")
            if verify.strip().lower() != 'y':
                log.info("Refresh cancelled by user")
                return 1

        ok = run.run(skip_fetch=args.skip_fetch, skip_restore=args.skip_restore,
                     skip_copy=args.skip_copy)
        return 0 if ok else 1
    finally:
        log.close()


if __name__ == "__main__":
    sys.exit(main())
