"""
PostgreSQL dump and restore handlers.

Dumps and restores run the PostgreSQL client tools (pg_dump, pg_dumpall,
pg_restore, psql) as subprocesses. Database discovery for "all databases"
mode queries pg_database through SQLAlchemy.
"""

import logging
import os
import shlex
import subprocess
from typing import List, Optional, Iterable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class DumpError(Exception):
    """Raised when a dump, restore or database listing fails."""
    pass


class PostgresClient:
    """
    Runs dumps and restores against one PostgreSQL server.
    """

    def __init__(
        self,
        host: str,
        port: int = 5432,
        user: str = 'postgres',
        password: Optional[str] = None,
        extra_dump_opts: str = ''
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.extra_dump_opts = shlex.split(extra_dump_opts or '')

    @classmethod
    def from_config(cls, config) -> 'PostgresClient':
        return cls(
            host=config.postgres_host,
            port=config.postgres_port,
            user=config.postgres_user,
            password=config.postgres_password,
            extra_dump_opts=config.pgdump_extra_opts
        )

    def _connection_args(self) -> List[str]:
        return ['-h', self.host, '-p', str(self.port), '-U', self.user]

    def _env(self) -> dict:
        env = os.environ.copy()
        if self.password:
            env['PGPASSWORD'] = self.password
        return env

    def _run(self, cmd: List[str], description: str, stdout=None):
        logger.debug(f"Running {cmd[0]} for {description}")
        try:
            result = subprocess.run(
                cmd,
                stdout=stdout if stdout is not None else subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=self._env()
            )
        except FileNotFoundError:
            raise DumpError(f"{cmd[0]} not found - install postgresql-client")
        except OSError as e:
            raise DumpError(f"Failed to run {cmd[0]} for {description}: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or b'').decode(errors='replace').strip()
            raise DumpError(f"{cmd[0]} failed for {description} (exit {result.returncode}): {stderr[:500]}")

    def list_databases(self, ignore: Iterable[str] = ()) -> List[str]:
        """
        List non-template databases on the server.

        Args:
            ignore: Database names to leave out

        Returns:
            Sorted database names

        Raises:
            DumpError: If the server cannot be queried
        """
        url = URL.create(
            'postgresql+psycopg2',
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database='postgres'
        )
        engine = create_engine(url)
        try:
            with engine.connect() as conn:
                rows = conn.execute(
                    text("SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname")
                ).fetchall()
        except SQLAlchemyError as e:
            raise DumpError(f"Failed to list databases on {self.host}:{self.port}: {e}")
        finally:
            engine.dispose()

        ignored = set(ignore)
        return [row[0] for row in rows if row[0] not in ignored]

    def dump(self, database: str, dest_path: str) -> str:
        """
        Dump one database in pg_dump's custom format.

        Raises:
            DumpError: If pg_dump fails
        """
        cmd = ['pg_dump', '--format=custom'] + self._connection_args() + ['-d', database] + self.extra_dump_opts
        with open(dest_path, 'wb') as out:
            self._run(cmd, f"database {database}", stdout=out)
        return dest_path

    def dump_cluster(self, dest_path: str) -> str:
        """
        Dump the whole cluster as plain SQL with pg_dumpall.

        Raises:
            DumpError: If pg_dumpall fails
        """
        cmd = ['pg_dumpall'] + self._connection_args()
        with open(dest_path, 'wb') as out:
            self._run(cmd, "cluster", stdout=out)
        return dest_path

    def restore(self, dump_path: str, database: str, create: bool = False):
        """
        Restore a custom-format dump into a database.

        Existing objects are dropped and recreated.

        Args:
            dump_path: Custom-format dump file
            database: Database to restore into
            create: Drop and recreate the database itself from the dump,
                connecting through the maintenance database, so it need
                not exist beforehand

        Raises:
            DumpError: If pg_restore fails
        """
        if create:
            target = ['-d', 'postgres', '--create']
        else:
            target = ['-d', database]
        cmd = ['pg_restore'] + self._connection_args() + target + ['--clean', '--if-exists', dump_path]
        self._run(cmd, f"database {database}")

    def restore_cluster(self, dump_path: str):
        """
        Replay a pg_dumpall script against the server.

        Raises:
            DumpError: If psql fails
        """
        cmd = ['psql'] + self._connection_args() + ['-d', 'postgres', '-f', dump_path]
        self._run(cmd, "cluster")
