"""Implement ``pgkeeperctl``: a command-line application to drive the keeper of the local node by hand.

Every command maps the errors it runs into to a distinct exit status, see :class:`ExitCode`, so that scripts driving
``pgkeeperctl`` can tell a configuration problem from an unreachable monitor.
"""
import json
import logging
import os

from contextlib import contextmanager
from enum import IntEnum
from typing import Any, Dict, Iterator, List, Optional

import click
import yaml

from prettytable import PrettyTable

from . import fsm
from .config import Config
from .exceptions import ConfigParseError, InvalidNodeState, KeeperException, KeeperStateError, MonitorError, \
    PostgresException
from .keeper import Keeper
from .monitor import Monitor, NodeAddress
from .state import NodeState
from .utils import parse_int
from .version import __version__

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Exit statuses of ``pgkeeperctl``."""

    QUIT = 0
    BAD_ARGS = 1
    BAD_CONFIG = 2
    BAD_STATE = 3
    PGSQL = 4
    PGCTL = 5
    MONITOR = 6
    INTERNAL_ERROR = 12


class KeeperCtlException(click.ClickException):
    """Raised upon issues faced by ``pgkeeperctl`` utility.

    :ivar exit_code: status the process exits with.
    """

    def __init__(self, message: str, exit_code: ExitCode = ExitCode.INTERNAL_ERROR) -> None:
        super(KeeperCtlException, self).__init__(message)
        self.exit_code = int(exit_code)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn pgkeeper exceptions raised in the block into :class:`KeeperCtlException` with the matching exit code."""
    try:
        yield
    except ConfigParseError as e:
        raise KeeperCtlException(str(e.value), ExitCode.BAD_CONFIG) from e
    except InvalidNodeState as e:
        raise KeeperCtlException(str(e.value), ExitCode.BAD_ARGS) from e
    except KeeperStateError as e:
        raise KeeperCtlException(str(e.value), ExitCode.BAD_STATE) from e
    except MonitorError as e:
        raise KeeperCtlException(str(e.value), ExitCode.MONITOR) from e
    except PostgresException as e:
        raise KeeperCtlException(str(e.value), ExitCode.PGCTL) from e
    except KeeperException as e:
        raise KeeperCtlException(str(e.value), ExitCode.INTERNAL_ERROR) from e
    except click.ClickException:
        raise
    except Exception as e:
        logger.exception('Unexpected error')
        raise KeeperCtlException('Unexpected error: {0!r}'.format(e), ExitCode.INTERNAL_ERROR) from e


def _get_configuration() -> Config:
    """Get the configuration, loading it on first use.

    :raises:
        :class:`KeeperCtlException`: if the configuration can't be loaded.
    """
    obj = click.get_current_context().find_root().obj
    if obj.get('__config') is None:
        with handle_errors():
            obj['__config'] = Config(obj['__config_file'])
    return obj['__config']


def _get_monitor(config: Config) -> Monitor:
    if config.monitor_disabled:
        raise KeeperCtlException('This command needs a monitor, but monitor.disabled is set', ExitCode.BAD_CONFIG)
    with handle_errors():
        return Monitor(config['monitor'])


def parse_node_state(value: str) -> NodeState:
    """Parse a role given on the command line.

    :raises:
        :class:`KeeperCtlException`: with :attr:`ExitCode.BAD_ARGS` if *value* isn't a valid role.
    """
    with handle_errors():
        state = NodeState.from_string(value)
    if not state.is_role:
        raise KeeperCtlException('"{0}" is not a valid node state'.format(value), ExitCode.BAD_ARGS)
    return state


def format_config_for_editing(data: Any, default_flow_style: bool = False) -> str:
    """Format data as YAML for human consumption."""
    return yaml.safe_dump(data, default_flow_style=default_flow_style, encoding=None, allow_unicode=True, width=200)


def print_output(columns: List[str], rows: List[List[Any]], fmt: str = 'pretty', header: str = '',
                 delimiter: str = '\t') -> None:
    """Print tabular information.

    :param columns: list of column names.
    :param rows: list of rows. Each item is a list of values for the columns.
    :param fmt: the printing format. Can be one among:

        * ``json``: to print as a JSON string -- array of objects;
        * ``yaml`` or ``yml``: to print as a YAML string;
        * ``tsv``: to print a table of separated values, by default by tab;
        * ``pretty``: to print a pretty table.
    :param header: title of the table, only used when *fmt* is ``pretty``.
    :param delimiter: the character to be used as delimiter when *fmt* is ``tsv``.
    """
    if fmt in {'json', 'yaml', 'yml'}:
        elements = [dict(zip(columns, r)) for r in rows]
        func = json.dumps if fmt == 'json' else format_config_for_editing
        click.echo(func(elements))
    elif fmt == 'tsv':
        for r in [columns] + rows:
            click.echo(delimiter.join(map(str, r)))
    else:
        table = PrettyTable(columns)
        table.align = 'l'
        if header:
            table.title = header
        for r in rows:
            table.add_row(r)
        click.echo(table)


def _node_rows(nodes: List[NodeAddress]) -> List[List[Any]]:
    return [[node.node_id, node.host, node.port, str(node.state)] for node in nodes]


option_format = click.option('--format', '-f', 'fmt', help='Output format', default='pretty',
                             type=click.Choice(['pretty', 'tsv', 'json', 'yaml', 'yml']))


@click.group(cls=click.Group)
@click.option('--config-file', '-c', help='Configuration file', envvar='PGKEEPER_CONFIG_FILE', default=None)
@click.option('--verbose', '-v', count=True, help='Log more, repeat for debug messages')
@click.version_option(__version__, prog_name='pgkeeperctl')
@click.pass_context
def ctl(ctx: click.Context, config_file: Optional[str], verbose: int) -> None:
    """Command-line interface for the keeper of a PostgreSQL node.
    \f
    Entry point of ``pgkeeperctl`` utility.

    .. note::
        The log level is ``WARNING`` by default. It is raised by ``-v``, or set through either of these environment
        variables:
            * ``LOGLEVEL``
            * ``PGKEEPER_LOGLEVEL``

    :param ctx: click context to be passed to sub-commands.
    :param config_file: path to the configuration file.
    :param verbose: how many times ``-v`` was given.
    """
    level = 'WARNING'
    for name in ('LOGLEVEL', 'PGKEEPER_LOGLEVEL'):
        level = os.environ.get(name, level)
    if verbose:
        level = 'INFO' if verbose == 1 else 'DEBUG'
    logging.basicConfig(format='%(asctime)s - %(levelname)s - %(message)s', level=level)
    ctx.obj = {'__config_file': config_file, '__config': None}


@ctl.group('do', help='Low level commands, one keeper operation at a time')
def do() -> None:
    pass


@do.group('fsm', help='Manage the keeper state machine')
def fsm_group() -> None:
    pass


@fsm_group.command('init', help='Initialize the keeper state file')
@click.option('--force', is_flag=True, help='Replace an existing state file, the node identity is lost')
def fsm_init(force: bool) -> None:
    config = _get_configuration()
    logger.info('Initializing keeper state in "%s"', config.state_file)
    with handle_errors():
        keeper = Keeper.create(config, force)
    click.echo(keeper.state_as_json())


@fsm_group.command('state', help='Refresh the facts of the local instance and print the keeper state')
def fsm_state() -> None:
    config = _get_configuration()
    with handle_errors():
        keeper = Keeper.init(config)
        keeper.refresh_local_facts()
        keeper.store_state()
    click.echo(keeper.state_as_json())


@fsm_group.command('list', help='List the states reachable from the current state')
@option_format
def fsm_list(fmt: str) -> None:
    config = _get_configuration()
    with handle_errors():
        keeper = Keeper.init(config)
    current = keeper.state.current_role
    rows = [[str(target), fsm.get_transition(current, target).comment] for target in fsm.reachable_states(current)]
    print_output(['State', 'Description'], rows, fmt, 'Current state: {0}'.format(current))


@fsm_group.command('gv', help='Print the state machine as a graphviz program')
def fsm_gv() -> None:
    click.echo(fsm.as_graphviz(), nl=False)


@fsm_group.command('assign', help='Reach the given state, without asking the monitor')
@click.argument('goal')
@click.argument('host', required=False)
@click.argument('port', required=False)
def fsm_assign(goal: str, host: Optional[str], port: Optional[str]) -> None:
    goal_state = parse_node_state(goal)

    other_node = None
    if host is not None:
        node_port = parse_int(port)
        if node_port is None or not 0 < node_port < 65536:
            raise KeeperCtlException('USAGE: do fsm assign <goal state> [<host> <port>]', ExitCode.BAD_ARGS)
        other_node = NodeAddress(0, host, node_port)

    config = _get_configuration()
    with handle_errors():
        keeper = Keeper.init(config)
        reached = keeper.assign_goal(goal_state, other_node)
    if not reached:
        raise KeeperCtlException('Failed to reach state "{0}", current state is "{1}"'
                                 .format(goal_state, keeper.state.current_role), ExitCode.BAD_STATE)
    click.echo(keeper.state_as_json())


@fsm_group.command('step', help='Run one round: report to the monitor, then step toward the assigned state')
@click.option('--local', is_flag=True, help='Step toward the assigned state without contacting the monitor')
def fsm_step(local: bool) -> None:
    config = _get_configuration()
    if config.monitor_disabled and not local:
        raise KeeperCtlException('"do fsm step" needs the monitor to get the assigned state, see "do fsm assign" or '
                                 '"do fsm step --local" instead', ExitCode.BAD_CONFIG)
    with handle_errors():
        keeper = Keeper.init(config)
        old_role = keeper.state.current_role
        result = keeper.step_once() if local else keeper.reconcile_with_monitor()
    click.echo('{0} -> {1}'.format(old_role, result.role))
    if result.outcome == fsm.StepOutcome.FAILED:
        raise KeeperCtlException('Failed to step toward state "{0}"'.format(keeper.state.assigned_role),
                                 ExitCode.BAD_STATE)


@do.group('monitor', help='Query and update the monitor')
def monitor_group() -> None:
    pass


@monitor_group.group('get', help='Get information from the monitor')
def monitor_get() -> None:
    pass


@monitor_get.command('primary', help='Get the primary node of a group')
@click.option('--group', type=int, default=None, help='Group id, the group of this node by default')
@option_format
def monitor_get_primary(group: Optional[int], fmt: str) -> None:
    config = _get_configuration()
    monitor = _get_monitor(config)
    if group is None:
        group = config.get('group') or 0
    with handle_errors():
        primary = monitor.get_primary(config['formation'], group)
    print_output(['Node', 'Host', 'Port', 'State'], _node_rows([primary]), fmt,
                 'Formation: {0} (group: {1})'.format(config['formation'], group))


@monitor_get.command('others', help='Get the other nodes of the group of this node')
@click.option('--state', 'role_filter', default=None, help='Only list nodes in this state')
@option_format
def monitor_get_others(role_filter: Optional[str], fmt: str) -> None:
    config = _get_configuration()
    state = NodeState.ANY_STATE if role_filter is None else parse_node_state(role_filter)
    monitor = _get_monitor(config)
    with handle_errors():
        nodes = monitor.get_other_nodes(config['nodename'], config['postgresql']['port'], state)
    print_output(['Node', 'Host', 'Port', 'State'], _node_rows(nodes), fmt,
                 'Formation: {0}'.format(config['formation']))


@monitor_get.command('coordinator', help='Get the coordinator of the formation')
def monitor_get_coordinator() -> None:
    config = _get_configuration()
    monitor = _get_monitor(config)
    with handle_errors():
        coordinator = monitor.get_coordinator(config['formation'])
    if coordinator is None:
        click.echo('No coordinator is ready in formation "{0}"'.format(config['formation']), err=True)
    else:
        click.echo('{0} {1}'.format(config['formation'], coordinator))


def _assignment_line(config: Config, node_id: int, group_id: int, state: NodeState) -> str:
    return '{0}/{1} {2}:{3} {4}:{5} {6}'.format(config['formation'], config.get('group') or 0, config['nodename'],
                                                config['postgresql']['port'], node_id, group_id, state)


@monitor_group.command('register', help='Register this node with the monitor')
@click.argument('initial_state')
def monitor_register(initial_state: str) -> None:
    state = parse_node_state(initial_state)
    config = _get_configuration()
    _get_monitor(config)
    with handle_errors():
        keeper = Keeper.register_and_init(config, state)
    click.echo(_assignment_line(config, keeper.state.current_node_id, keeper.state.current_group,
                                keeper.state.assigned_role))


@monitor_group.command('active', help='Report to the monitor and store the assigned state, without stepping')
def monitor_active() -> None:
    config = _get_configuration()
    _get_monitor(config)
    with handle_errors():
        keeper = Keeper.init(config)
        assigned = keeper.report_to_monitor()
    click.echo(_assignment_line(config, assigned.node_id, assigned.group_id, assigned.state))


@monitor_group.command('version', help='Check the monitor extension version, upgrading it if needed')
def monitor_version() -> None:
    config = _get_configuration()
    monitor = _get_monitor(config)
    with handle_errors():
        version = monitor.ensure_extension_version()
    click.echo(version)
