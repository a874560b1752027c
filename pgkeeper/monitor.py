"""Client side of the monitor protocol.

The monitor is a PostgreSQL database with the ``pgautofailover`` extension installed. Each operation here is a single
call to one of the extension's SQL functions, made on a connection opened for that call only. The client never keeps
state between calls and never touches the keeper state: it returns what the monitor answered, or raises.
"""
import logging

from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Type

from . import EXTENSION_NAME, EXTENSION_VERSION, psycopg
from .connection import query
from .exceptions import ConfigParseError, InvalidNodeState, MonitorError, MonitorRejected, MonitorUnreachable, \
    NoPrimaryYet, RegistrationRejected, VersionMismatchUnresolvable
from .postgresql import LocalFacts
from .state import NodeState
from .utils import format_lsn

logger = logging.getLogger(__name__)


class NodeAddress(NamedTuple):
    """How to reach another node of the formation.

    :ivar node_id: id the monitor gave to the node.
    :ivar host: host name or address of the node.
    :ivar port: PostgreSQL port of the node.
    :ivar state: last known role of the node, :attr:`~pgkeeper.state.NodeState.NO_STATE` when not reported.
    """

    node_id: int
    host: str
    port: int
    state: NodeState = NodeState.NO_STATE

    def __str__(self) -> str:
        return '{0}:{1}'.format(self.host, self.port)


class AssignedState(NamedTuple):
    """Answer of the monitor to a registration or a node active report."""

    node_id: int
    group_id: int
    state: NodeState

    @classmethod
    def from_row(cls, row: Tuple[Any, ...]) -> 'AssignedState':
        """Build an :class:`AssignedState` from a row returned by the monitor.

        :raises:
            :exc:`~pgkeeper.exceptions.MonitorRejected`: if the monitor assigned a state this keeper doesn't know.
        """
        try:
            state = NodeState.from_string(row[2])
        except InvalidNodeState as e:
            raise MonitorRejected('monitor assigned an unknown state: {0}'.format(e.value)) from e
        return cls(int(row[0]), int(row[1]), state)


class Monitor(object):
    """Connection parameters to the monitor and the SQL calls of the protocol.

    :param config: the ``monitor`` section of the configuration.

    :raises:
        :exc:`~pgkeeper.exceptions.ConfigParseError`: if ``pguri`` is missing or can't be parsed.
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        pguri = config.get('pguri')
        conn_kwargs = psycopg.parse_conninfo(pguri, lambda _: None) if pguri else None
        if not conn_kwargs:
            raise ConfigParseError('Invalid monitor connection string: {0!r}'.format(pguri))
        self.pguri = pguri
        conn_kwargs['connect_timeout'] = int(config.get('connect_timeout', 5))
        conn_kwargs['options'] = '-c statement_timeout={0}'.format(int(config.get('statement_timeout', 10)) * 1000)
        self._conn_kwargs = conn_kwargs

    def _query(self, sql: str, *params: Any, error: Type[MonitorError] = MonitorRejected) -> List[Tuple[Any, ...]]:
        """Execute *sql* on the monitor.

        :param sql: statement to execute.
        :param params: parameters of the statement.
        :param error: exception class to raise when the monitor answers with an error.

        :returns: all rows returned by the monitor.

        :raises:
            :exc:`~pgkeeper.exceptions.MonitorUnreachable`: if the monitor could not be reached in time.
            *error*: if the monitor reported an error for the call.
        """
        try:
            return query(self._conn_kwargs, sql, *params)
        except psycopg.OperationalError as e:
            logger.warning('Failed to contact the monitor: %s', e)
            raise MonitorUnreachable('monitor is unreachable: {0}'.format(str(e).strip())) from e
        except psycopg.Error as e:
            logger.error('Monitor returned an error: %s', e)
            raise error('monitor error: {0}'.format(str(e).strip())) from e

    def get_primary(self, formation: str, group_id: int) -> NodeAddress:
        """Get the primary node of a group.

        :raises:
            :exc:`~pgkeeper.exceptions.NoPrimaryYet`: if the group has no primary.
        """
        rows = self._query('SELECT primary_node_id, primary_name, primary_port '
                           'FROM pgautofailover.get_primary(%s, %s)', formation, group_id)
        if not rows or rows[0][0] is None:
            raise NoPrimaryYet('no primary node in formation "{0}" group {1}'.format(formation, group_id))
        node_id, host, port = rows[0]
        return NodeAddress(int(node_id), host, int(port))

    def get_other_nodes(self, nodename: str, port: int,
                        role_filter: NodeState = NodeState.ANY_STATE) -> List[NodeAddress]:
        """Get the other nodes of the group of the node *nodename*:*port*.

        :param role_filter: only return nodes currently in this role, all of them if
            :attr:`~pgkeeper.state.NodeState.ANY_STATE`.
        """
        if role_filter == NodeState.ANY_STATE:
            rows = self._query('SELECT node_id, node_name, node_port '
                               'FROM pgautofailover.get_other_nodes(%s, %s)', nodename, port)
            state = NodeState.NO_STATE
        else:
            rows = self._query('SELECT node_id, node_name, node_port '
                               'FROM pgautofailover.get_other_nodes(%s, %s, %s::pgautofailover.replication_state)',
                               nodename, port, role_filter.value)
            state = role_filter
        return [NodeAddress(int(node_id), host, int(node_port), state) for node_id, host, node_port in rows]

    def get_coordinator(self, formation: str) -> Optional[NodeAddress]:
        """Get the coordinator of *formation*, ``None`` if no coordinator is ready yet."""
        rows = self._query('SELECT node_host, node_port FROM pgautofailover.get_coordinator(%s)', formation)
        if not rows or rows[0][0] is None:
            return None
        host, port = rows[0]
        return NodeAddress(0, host, int(port))

    def register_node(self, formation: str, group_id: Optional[int], nodename: str, port: int, dbname: str,
                      initial_role: NodeState, facts: LocalFacts) -> AssignedState:
        """Register a new node with the monitor.

        :param group_id: desired group, ``None`` (sent as ``-1``) to let the monitor decide.
        :param initial_role: the role the node wants to start with.
        :param facts: current facts of the local instance.

        :returns: the identifiers and the role the monitor assigned.

        :raises:
            :exc:`~pgkeeper.exceptions.RegistrationRejected`: if the monitor refused the registration.
        """
        logger.info('Registering %s:%s to formation "%s" as %s', nodename, port, formation, initial_role)
        rows = self._query('SELECT assigned_node_id, assigned_group_id, assigned_group_state '
                           'FROM pgautofailover.register_node(%s, %s, %s, %s, %s, '
                           '%s::pgautofailover.replication_state)',
                           formation, nodename, port, dbname, -1 if group_id is None else group_id,
                           initial_role.value, error=RegistrationRejected)
        if not rows:
            raise RegistrationRejected('monitor returned no assignment for {0}:{1}'.format(nodename, port))
        assigned = AssignedState.from_row(rows[0])
        logger.info('Registered node %s:%s with id %d in group %d, assigned state "%s"',
                    nodename, port, assigned.node_id, assigned.group_id, assigned.state)
        return assigned

    def node_active(self, formation: str, nodename: str, port: int, node_id: int, group_id: int,
                    current_role: NodeState, facts: LocalFacts) -> AssignedState:
        """Report the current role and facts of the node, and get its assigned role back."""
        rows = self._query('SELECT assigned_node_id, assigned_group_id, assigned_group_state '
                           'FROM pgautofailover.node_active(%s, %s, %s, %s, %s, '
                           '%s::pgautofailover.replication_state, %s, %s::pg_lsn, %s)',
                           formation, nodename, port, node_id, group_id, current_role.value,
                           facts.pg_is_running, format_lsn(facts.current_lsn), facts.sync_state)
        if not rows:
            raise MonitorRejected('monitor returned no assignment for node {0}'.format(node_id))
        assigned = AssignedState.from_row(rows[0])
        logger.debug('node_active(%s:%s, %s) -> %r', nodename, port, current_role, assigned)
        return assigned

    def ensure_extension_version(self) -> str:
        """Make sure the monitor runs the extension version this keeper speaks.

        :returns: the installed extension version.

        :raises:
            :exc:`~pgkeeper.exceptions.VersionMismatchUnresolvable`: if the expected version isn't available on the
                monitor.
        """
        rows = self._query('SELECT default_version, installed_version '
                           'FROM pg_catalog.pg_available_extensions WHERE name = %s', EXTENSION_NAME)
        if not rows:
            raise VersionMismatchUnresolvable('extension "{0}" is not available on the monitor'.format(EXTENSION_NAME))

        default_version, installed_version = rows[0]
        if installed_version == EXTENSION_VERSION:
            return installed_version

        if default_version != EXTENSION_VERSION:
            raise VersionMismatchUnresolvable(
                'expected version "{0}" of extension "{1}" is not available on the monitor, default version is "{2}"'
                .format(EXTENSION_VERSION, EXTENSION_NAME, default_version))

        logger.warning('Updating extension "%s" from version "%s" to "%s" on the monitor',
                       EXTENSION_NAME, installed_version, EXTENSION_VERSION)
        self._query('ALTER EXTENSION {0} UPDATE TO {1}'.format(psycopg.quote_ident(EXTENSION_NAME),
                                                               psycopg.quote_literal(EXTENSION_VERSION)),
                    error=VersionMismatchUnresolvable)
        return EXTENSION_VERSION
