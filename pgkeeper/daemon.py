"""Daemon processes abstraction module.

This module implements abstraction classes and functions for creating and managing the ``pgkeeper`` daemon process.
"""
import abc
import argparse
import logging
import os
import signal
import sys

from threading import Lock
from typing import Any, Optional, Type, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)


def get_base_arg_parser() -> argparse.ArgumentParser:
    """Create a basic argument parser with the arguments used by the daemon.

    :returns: 'argparse.ArgumentParser' object
    """
    from .config import Config
    from .version import __version__

    parser = argparse.ArgumentParser()
    parser.add_argument('--version', action='version', version='%(prog)s {0}'.format(__version__))
    parser.add_argument('configfile', nargs='?', default='',
                        help='pgkeeper may also read the configuration from the {0} environment variable'
                        .format(Config.PGKEEPER_CONFIG_VARIABLE))
    return parser


class AbstractKeeperDaemon(abc.ABC):
    """A pgkeeper daemon process.

    .. note::

        When inheriting from :class:`AbstractKeeperDaemon` you are expected to define the methods :func:`_run_cycle`
        to determine what it should do in each execution cycle, and :func:`_shutdown` to determine what it should do
        when shutting down.

    :ivar logger: log handler used by this daemon.
    :ivar config: configuration options for this daemon.
    """

    def __init__(self, config: 'Config') -> None:
        """Set up signal handlers, logging handler and configuration.

        :param config: configuration options for this daemon.
        """
        from .log import KeeperLogger

        self.setup_signal_handlers()

        self.logger = KeeperLogger()
        self.config = config
        AbstractKeeperDaemon.reload_config(self, local=True)

    def sighup_handler(self, *_: Any) -> None:
        """Handle SIGHUP signals.

        Flag the daemon as "SIGHUP received".
        """
        self._received_sighup = True

    def api_sigterm(self) -> bool:
        """Guarantee only a single SIGTERM is being processed.

        :returns: ``True`` if the daemon was flagged as "SIGTERM received".
        """
        ret = False
        with self._sigterm_lock:
            if not self._received_sigterm:
                self._received_sigterm = True
                ret = True
        return ret

    def sigterm_handler(self, *_: Any) -> None:
        """Handle SIGTERM signals.

        Terminate the daemon process through :func:`api_sigterm`.
        """
        if self.api_sigterm():
            sys.exit()

    def setup_signal_handlers(self) -> None:
        """Set up daemon signal handlers.

        .. note::

            SIGHUP is only handled in non-Windows environments.
        """
        self._received_sighup = False
        self._sigterm_lock = Lock()
        self._received_sigterm = False
        if os.name != 'nt':
            signal.signal(signal.SIGHUP, self.sighup_handler)
        signal.signal(signal.SIGTERM, self.sigterm_handler)

    @property
    def received_sigterm(self) -> bool:
        """If daemon was signaled with SIGTERM."""
        with self._sigterm_lock:
            return self._received_sigterm

    def reload_config(self, sighup: bool = False, local: Optional[bool] = False) -> None:
        """Reload configuration.

        :param sighup: if it is related to a SIGHUP signal.
        :param local: will be ``True`` if there are changes in the local configuration file.
        """
        if local:
            self.logger.reload_config(self.config.get('log', {}))

    @abc.abstractmethod
    def _run_cycle(self) -> None:
        """Define what the daemon should do in each execution cycle.

        Keep being called in the daemon's main loop until the daemon is eventually terminated.
        """

    def run(self) -> None:
        """Run the daemon process.

        Keep running execution cycles until a SIGTERM is eventually received. Also reload configuration upon
        receiving SIGHUP.
        """
        while not self.received_sigterm:
            if self._received_sighup:
                self._received_sighup = False
                self.reload_config(True, self.config.reload_local_configuration())

            self._run_cycle()

    @abc.abstractmethod
    def _shutdown(self) -> None:
        """Define what the daemon should do when shutting down."""

    def shutdown(self) -> None:
        """Shut the daemon down when a SIGTERM is received."""
        with self._sigterm_lock:
            self._received_sigterm = True
        self._shutdown()
        self.logger.shutdown()


def abstract_main(cls: Type[AbstractKeeperDaemon], configfile: str) -> None:
    """Create the main entry point of a given daemon process.

    .. note::
        Configuration problems, and the local state problems the daemon can't repair by itself, terminate the process
        with their description as exit message.

    :param cls: a class that should inherit from :class:`AbstractKeeperDaemon`.
    :param configfile: path to the configuration file.
    """
    from .config import Config
    from .exceptions import ConfigParseError, KeeperFatalException, KeeperStateError

    try:
        config = Config(configfile)
    except ConfigParseError as e:
        sys.exit(e.value)

    try:
        controller = cls(config)
    except (ConfigParseError, KeeperStateError) as e:
        sys.exit(e.value)

    try:
        controller.run()
    except KeyboardInterrupt:
        pass
    except (ConfigParseError, KeeperFatalException, KeeperStateError) as e:
        logger.critical('pgkeeper can not continue: %s', e.value)
        sys.exit(e.value)
    finally:
        controller.shutdown()
