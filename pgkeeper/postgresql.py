"""Local PostgreSQL instance probe.

The keeper needs two things from the instance it runs next to: a handful of runtime facts (is it running, where is
its WAL, how is it replicating) and a few effectful primitives to move it between roles. Every primitive checks its
postcondition first, so calling it against an instance that already converged does nothing and reports success.
"""
import abc
import logging
import os
import subprocess

from typing import Any, Dict, List, NamedTuple, Optional, Tuple, TYPE_CHECKING

from . import psycopg
from .connection import query
from .exceptions import PostgresConnectionException, PostgresException
from .postmaster import PostmasterProcess

if TYPE_CHECKING:  # pragma: no cover
    from .monitor import NodeAddress

logger = logging.getLogger(__name__)

STANDBY_CONFIG_FILE = 'pgkeeper-standby.conf'
STANDBY_SIGNAL_FILE = 'standby.signal'


class LocalFacts(NamedTuple):
    """Runtime facts of the local instance.

    :ivar pg_is_running: whether the postmaster is up.
    :ivar current_lsn: current WAL write (or receive) position, ``0`` when unknown.
    :ivar sync_state: ``sync_state`` of the replication connection, empty when there is none.
    """

    pg_is_running: bool
    current_lsn: int
    sync_state: str

    @classmethod
    def unknown(cls) -> 'LocalFacts':
        """Conservative facts used when the instance could not be queried."""
        return cls(False, 0, '')


class AbstractPostgresql(abc.ABC):
    """Interface of the local instance probe used by the state machine actions."""

    @abc.abstractmethod
    def data_directory_empty(self) -> bool:
        """Check whether the data directory is missing or empty."""

    @abc.abstractmethod
    def is_running(self) -> bool:
        """Check whether the postmaster of the local instance is up."""

    @abc.abstractmethod
    def current_write_position(self) -> int:
        """Get the current WAL position of the instance, ``0`` if unknown."""

    @abc.abstractmethod
    def replication_sync_state(self) -> str:
        """Get the ``sync_state`` of the replication connection, empty if there is none."""

    def facts(self) -> LocalFacts:
        """Collect all runtime facts in one go.

        :returns: :class:`LocalFacts`, with conservative values for an instance that is not running.
        """
        if not self.is_running():
            return LocalFacts.unknown()
        return LocalFacts(True, self.current_write_position(), self.replication_sync_state())

    @abc.abstractmethod
    def start(self) -> bool:
        """Start the instance, ``True`` if it is running afterwards."""

    @abc.abstractmethod
    def stop(self) -> bool:
        """Stop the instance, ``True`` if it is stopped afterwards."""

    @abc.abstractmethod
    def promote(self) -> bool:
        """Promote the standby, ``True`` if the instance accepts writes afterwards."""

    @abc.abstractmethod
    def demote(self) -> bool:
        """Stop accepting writes, ``True`` if the instance is stopped afterwards."""

    @abc.abstractmethod
    def enable_streaming(self, primary: 'NodeAddress') -> bool:
        """Configure the instance as a standby of *primary* and make sure it runs."""

    @abc.abstractmethod
    def set_synchronous_replication(self, enabled: bool) -> bool:
        """Enable or disable synchronous replication on the primary."""

    @abc.abstractmethod
    def is_streaming(self) -> bool:
        """Check whether the WAL receiver is streaming from the primary."""


class Postgresql(AbstractPostgresql):
    """Probe of a local instance driven with ``pg_ctl`` and SQL.

    :param config: the ``postgresql`` section of the configuration.
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        self.config = config
        self._data_dir = config['data_dir']
        self._bin_dir = config.get('bin_dir') or ''
        self._pg_ctl_timeout = int(config.get('pg_ctl_timeout', 60))
        self._replication = config.get('replication') or {}
        self._conn_kwargs = {k: v for k, v in {
            'host': config.get('host'),
            'port': config.get('port'),
            'dbname': config.get('dbname'),
            'user': config.get('username'),
            'connect_timeout': config.get('connect_timeout'),
        }.items() if v is not None}

    @property
    def data_dir(self) -> str:
        return self._data_dir

    @property
    def port(self) -> int:
        return int(self.config.get('port', 5432))

    def pgcommand(self, cmd: str) -> str:
        """Return path to the specified PostgreSQL command."""
        return os.path.join(self._bin_dir, cmd)

    def pg_ctl(self, cmd: str, *args: str, **kwargs: Any) -> bool:
        """Builds and executes pg_ctl command

        :returns: ``True`` when return_code == 0, otherwise ``False``
        """
        pg_ctl = [self.pgcommand('pg_ctl'), cmd]
        return subprocess.call(pg_ctl + ['-D', self._data_dir] + list(args), **kwargs) == 0

    def data_directory_empty(self) -> bool:
        """``True`` if the data directory does not exist or holds nothing but dot files."""
        if not os.path.isdir(self._data_dir):
            return True
        return all(name.startswith('.') for name in os.listdir(self._data_dir))

    def pg_control_exists(self) -> bool:
        return os.path.isfile(os.path.join(self._data_dir, 'global', 'pg_control'))

    def _query(self, sql: str, *params: Any) -> List[Tuple[Any, ...]]:
        try:
            return query(self._conn_kwargs, sql, *params)
        except psycopg.OperationalError as e:
            raise PostgresConnectionException('failed to connect to the local instance: {0}'.format(e)) from e
        except psycopg.Error as e:
            raise PostgresException('query failed on the local instance: {0}'.format(e)) from e

    def is_running(self) -> bool:
        return PostmasterProcess.from_pidfile(self._data_dir) is not None

    def is_in_recovery(self) -> bool:
        return bool(self._query('SELECT pg_catalog.pg_is_in_recovery()')[0][0])

    def current_write_position(self) -> int:
        rows = self._query("SELECT pg_catalog.pg_wal_lsn_diff(CASE WHEN pg_catalog.pg_is_in_recovery() "
                           "THEN COALESCE(pg_catalog.pg_last_wal_receive_lsn(), pg_catalog.pg_last_wal_replay_lsn()) "
                           "ELSE pg_catalog.pg_current_wal_lsn() END, '0/0')::bigint")
        return int(rows[0][0] or 0) if rows else 0

    def replication_sync_state(self) -> str:
        rows = self._query('SELECT sync_state FROM pg_catalog.pg_stat_replication '
                           "ORDER BY sync_state = 'sync' DESC LIMIT 1")
        return rows[0][0] if rows else ''

    def is_streaming(self) -> bool:
        if not self.is_running():
            return False
        rows = self._query('SELECT status FROM pg_catalog.pg_stat_wal_receiver')
        return bool(rows) and rows[0][0] == 'streaming'

    def start(self) -> bool:
        if self.is_running():
            return True
        logger.info('Starting PostgreSQL in "%s"', self._data_dir)
        return self.pg_ctl('start', '-w', '-t', str(self._pg_ctl_timeout), '-o', '-p {0}'.format(self.port))

    def stop(self) -> bool:
        if not self.is_running():
            return True
        logger.info('Stopping PostgreSQL in "%s"', self._data_dir)
        return self.pg_ctl('stop', '-m', 'fast', '-w', '-t', str(self._pg_ctl_timeout))

    def demote(self) -> bool:
        return self.stop()

    def restart(self) -> bool:
        logger.info('Restarting PostgreSQL in "%s"', self._data_dir)
        return self.pg_ctl('restart', '-m', 'fast', '-w', '-t', str(self._pg_ctl_timeout),
                           '-o', '-p {0}'.format(self.port))

    def promote(self) -> bool:
        if not self.is_running():
            logger.error('Can not promote PostgreSQL in "%s": it is not running', self._data_dir)
            return False
        if not self.is_in_recovery():
            logger.info('PostgreSQL in "%s" is already promoted', self._data_dir)
            return True
        logger.info('Promoting PostgreSQL in "%s"', self._data_dir)
        if not self.pg_ctl('promote', '-w', '-t', str(self._pg_ctl_timeout)):
            return False
        self._write_standby_config(None)
        return True

    def set_synchronous_replication(self, enabled: bool) -> bool:
        value = '*' if enabled else ''
        rows = self._query("SELECT pg_catalog.current_setting('synchronous_standby_names')")
        if rows and rows[0][0] == value:
            return True
        logger.info('%s synchronous replication', 'Enabling' if enabled else 'Disabling')
        self._query('ALTER SYSTEM SET synchronous_standby_names = ' + psycopg.quote_literal(value))
        self._query('SELECT pg_catalog.pg_reload_conf()')
        return True

    def primary_conninfo(self, primary: 'NodeAddress') -> str:
        params = {
            'host': primary.host,
            'port': primary.port,
            'user': self._replication.get('username'),
            'password': self._replication.get('password'),
            'sslmode': self._replication.get('sslmode'),
            'application_name': 'pgautofailover_standby',
        }
        return ' '.join('{0}={1}'.format(k, _quote_conninfo_value(v)) for k, v in params.items() if v is not None)

    def _standby_config_path(self) -> str:
        return os.path.join(self._data_dir, STANDBY_CONFIG_FILE)

    def _write_standby_config(self, primary: Optional['NodeAddress']) -> bool:
        """Write the standby settings include file.

        :param primary: the node to stream from, ``None`` to empty the file.

        :returns: ``True`` if the content of the file changed.
        """
        lines = ['# Do not edit, managed by pgkeeper\n']
        if primary is not None:
            conninfo = self.primary_conninfo(primary)
            lines.append("primary_conninfo = '{0}'\n".format(conninfo.replace("'", "''")))
        content = ''.join(lines)

        path = self._standby_config_path()
        try:
            with open(path) as f:
                if f.read() == content:
                    return False
        except IOError:
            pass

        with open(path, 'w') as f:
            f.write(content)

        include = "include_if_exists '{0}'\n".format(STANDBY_CONFIG_FILE)
        conf = os.path.join(self._data_dir, 'postgresql.conf')
        with open(conf, 'a+') as f:
            f.seek(0)
            if include not in f.readlines():
                f.write(include)
        return True

    def base_backup(self, primary: 'NodeAddress') -> bool:
        logger.info('Initializing standby in "%s" from %s:%s', self._data_dir, primary.host, primary.port)
        env = os.environ.copy()
        if self._replication.get('password'):
            env['PGPASSWORD'] = str(self._replication['password'])
        if self._replication.get('sslmode'):
            env['PGSSLMODE'] = self._replication['sslmode']
        cmd = [self.pgcommand('pg_basebackup'), '-D', self._data_dir, '-h', primary.host, '-p', str(primary.port),
               '-X', 'stream', '--no-password']
        if self._replication.get('username'):
            cmd.extend(['-U', self._replication['username']])
        return subprocess.call(cmd, env=env) == 0

    def enable_streaming(self, primary: 'NodeAddress') -> bool:
        if self.data_directory_empty() and not self.base_backup(primary):
            return False

        try:
            changed = self._write_standby_config(primary)
            signal_file = os.path.join(self._data_dir, STANDBY_SIGNAL_FILE)
            if not os.path.exists(signal_file):
                open(signal_file, 'w').close()
                changed = True
        except OSError as e:
            raise PostgresException('failed to write standby configuration: {0}'.format(e)) from e

        if not self.is_running():
            return self.start()
        return self.restart() if changed else True


def _quote_conninfo_value(value: Any) -> str:
    """Quote a value for a ``key=value`` connection string.

    :Example:

        >>> _quote_conninfo_value('10.0.0.2')
        '10.0.0.2'

        >>> _quote_conninfo_value("it's")
        "'it\\\\'s'"
    """
    value = str(value)
    if value and not any(c in value for c in " '\\"):
        return value
    return "'{0}'".format(value.replace('\\', '\\\\').replace("'", "\\'"))
