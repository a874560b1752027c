"""Implement high-level pgkeeper exceptions.

The hierarchy follows the error classes the keeper has to tell apart: configuration problems, local state problems
(including protocol violations of the state machine), monitor failures and local PostgreSQL failures. The command
line entry points map each family to a distinct exit status.
"""
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .state import NodeState


class KeeperException(Exception):
    """Parent class for all kind of pgkeeper exceptions.

    :ivar value: description of the exception.
    """

    def __init__(self, value: Any) -> None:
        """Create a new instance of :class:`KeeperException` with the given description.

        :param value: description of the exception.
        """
        self.value = value


class KeeperFatalException(KeeperException):
    """Catastrophic exception that prevents the keeper from performing its job."""

    pass


class ConfigParseError(KeeperException):
    """Any issue identified while loading or validating the configuration."""

    pass


class InvalidNodeState(KeeperException, ValueError):
    """A string could not be parsed as a known node state."""

    pass


class KeeperStateError(KeeperException):
    """The on-disk state of the keeper is missing, already exists, or can't be used as requested."""

    pass


class CorruptState(KeeperStateError):
    """The state file does not deserialize to a structurally valid record."""

    pass


class NoTransitionDefined(KeeperStateError):
    """There is no transition registered between two node states.

    :ivar current: the current role of the node.
    :ivar assigned: the role the node was asked to reach.
    """

    def __init__(self, current: 'NodeState', assigned: 'NodeState') -> None:
        super(NoTransitionDefined, self).__init__(
            'pgkeeper does not know how to reach state "{0}" from "{1}"'.format(assigned, current))
        self.current = current
        self.assigned = assigned


class TransitionFailed(KeeperStateError):
    """A transition action failed.

    :ivar reached: the role the action managed to reach before failing, if it made any progress.
    """

    def __init__(self, value: Any, reached: Optional['NodeState'] = None) -> None:
        super(TransitionFailed, self).__init__(value)
        self.reached = reached


class PostgresException(KeeperException):
    """Any exception related with local Postgres management."""

    pass


class PostgresConnectionException(PostgresException):
    """Any problem faced while connecting to the local Postgres instance."""

    pass


class MonitorError(KeeperException):
    """Parent class for all kind of monitor related exceptions."""

    pass


class MonitorUnreachable(MonitorError):
    """The monitor could not be contacted, or did not answer in time."""

    pass


class MonitorRejected(MonitorError):
    """The monitor answered with an error for the request."""

    pass


class RegistrationRejected(MonitorRejected):
    """The monitor refused to register the node in the requested initial state."""

    pass


class NoPrimaryYet(MonitorError):
    """The monitor does not know about a primary node in the group yet."""

    pass


class VersionMismatchUnresolvable(MonitorError, KeeperFatalException):
    """The monitor extension version differs from the expected one and can't be upgraded."""

    pass
