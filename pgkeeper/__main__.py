"""pgkeeper main entry point.

Implement ``pgkeeper`` main daemon and expose its entry point.
"""
import logging
import sys
import time

from argparse import Namespace
from typing import List, TYPE_CHECKING

from pgkeeper import MIN_PSYCOPG2, MIN_PSYCOPG3, parse_version
from pgkeeper.daemon import abstract_main, AbstractKeeperDaemon, get_base_arg_parser

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)


class KeeperDaemon(AbstractKeeperDaemon):
    """Implement ``pgkeeper`` command daemon.

    Each cycle is one round of the node active protocol, followed by a pause of ``loop_wait`` seconds. Transient
    failures only cost a round: the next one starts from whatever the state file says.

    :ivar keeper: the keeper of the local instance.
    :ivar next_run: time when to run the next cycle.
    """

    def __init__(self, config: 'Config') -> None:
        """Create a :class:`KeeperDaemon` instance with the given *config*.

        .. note::
            Expected to be instantiated and run through :func:`~pgkeeper.daemon.abstract_main`.

        :param config: pgkeeper configuration.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperStateError`: if the node was never registered.
        """
        from pgkeeper.keeper import Keeper
        from pgkeeper.version import __version__

        super(KeeperDaemon, self).__init__(config)

        self.version = __version__
        self.keeper = Keeper.init(config)
        self._extension_checked = False
        self.next_run = time.time()

    def _check_extension(self) -> None:
        from pgkeeper.exceptions import MonitorUnreachable

        if self._extension_checked or self.keeper.monitor is None:
            return
        try:
            version = self.keeper.monitor.ensure_extension_version()
        except MonitorUnreachable as e:
            logger.warning('Could not check the monitor extension version: %s', e.value)
            return
        logger.info('Monitor extension version is %s', version)
        self._extension_checked = True

    def schedule_next_run(self) -> None:
        """Schedule the next run of the main loop, ``loop_wait`` seconds after the previous one started."""
        self.next_run += self.config['loop_wait']
        nap_time = self.next_run - time.time()
        if nap_time <= 0:
            self.next_run = time.time()
            logger.warning('Loop time exceeded, rescheduling immediately.')
        else:
            time.sleep(nap_time)

    def _run_cycle(self) -> None:
        """Run a cycle of the ``pgkeeper`` daemon main loop.

        .. note::
            Transient failures of the monitor or of the local instance are logged and retried on the next cycle.
            Protocol errors are logged too, they need an operator but stopping the keeper would not help.
        """
        from pgkeeper.exceptions import MonitorError, MonitorUnreachable, NoTransitionDefined, PostgresException, \
            VersionMismatchUnresolvable

        try:
            self._check_extension()
            result = self.keeper.reconcile_with_monitor()
            logger.info('Current state is "%s", assigned state is "%s" (%s)',
                        result.role, self.keeper.state.assigned_role, result.outcome)
        except VersionMismatchUnresolvable:
            raise
        except (MonitorUnreachable, PostgresException) as e:
            logger.warning('Round failed, will retry: %s', e.value)
        except (MonitorError, NoTransitionDefined) as e:
            logger.error('Round failed: %s', e.value)

        self.schedule_next_run()

    def _shutdown(self) -> None:
        logger.info('pgkeeper is shutting down, PostgreSQL is left as it is')


def keeper_main(configfile: str) -> None:
    """Configure and start ``pgkeeper`` main daemon process.

    :param configfile: path to pgkeeper configuration file.
    """
    abstract_main(KeeperDaemon, configfile)


def process_arguments() -> Namespace:
    """Process command-line arguments.

    :returns: parsed arguments.
    """
    parser = get_base_arg_parser()
    return parser.parse_args()


def check_psycopg() -> None:
    """Ensure at least one among :mod:`psycopg2` or :mod:`psycopg` libraries are available in the environment.

    .. note::
        pgkeeper chooses :mod:`psycopg2` over :mod:`psycopg`, if possible.

        If nothing meeting the requirements is found, then exit with a fatal message.
    """
    min_psycopg2_str = '.'.join(map(str, MIN_PSYCOPG2))
    min_psycopg3_str = '.'.join(map(str, MIN_PSYCOPG3))

    available_versions: List[str] = []

    try:
        from psycopg2 import __version__
        if parse_version(__version__) >= MIN_PSYCOPG2:
            return
        available_versions.append('psycopg2=={0}'.format(__version__.split(' ')[0]))
    except ImportError:
        logger.debug('psycopg2 module is not available')

    try:
        from psycopg import __version__
        if parse_version(__version__) >= MIN_PSYCOPG3:
            return
        available_versions.append('psycopg=={0}'.format(__version__.split(' ')[0]))
    except ImportError:
        logger.debug('psycopg module is not available')

    error = f'FATAL: pgkeeper requires psycopg2>={min_psycopg2_str}, psycopg2-binary, or psycopg>={min_psycopg3_str}'
    if available_versions:
        error += ', but only {0} {1} available'.format(
            ' and '.join(available_versions),
            'is' if len(available_versions) == 1 else 'are')
    sys.exit(error)


def main() -> None:
    """Main entrypoint of :mod:`pgkeeper.__main__`.

    Process command-line arguments, ensure :mod:`psycopg2` (or :mod:`psycopg`) meets the pre-requisites and start
    ``pgkeeper`` daemon process.
    """
    check_psycopg()

    args = process_arguments()

    keeper_main(args.configfile)


if __name__ == '__main__':
    main()
