"""Durable state of the keeper.

The keeper owns exactly one state file per local PostgreSQL instance. It records which role the instance currently
has, which role it was assigned (by the monitor or by an operator), the identifiers the monitor gave the node at
registration time, and the last facts that were observed about the local instance.

The file is JSON, and every write goes through a temporary file that is atomically renamed over the previous version,
so that a crash at any point leaves either the old or the new record behind.

:var STATE_FORMAT_VERSION: version of the on-disk format written by this module.
"""
import json
import logging
import os
import tempfile

from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import CorruptState, InvalidNodeState, KeeperStateError
from .utils import fsync_dir

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class NodeState(str, Enum):
    """Possible roles of a node, as known by the monitor.

    The value of each member is the name the monitor uses for it, and the one written to the state file.

    :cvar NO_STATE: unset sentinel, never a valid current or assigned role.
    :cvar ANY_STATE: filter value for monitor lookups, never a role.
    """

    NO_STATE = 'unknown'
    INIT_STATE = 'init'
    SINGLE_STATE = 'single'
    WAIT_PRIMARY_STATE = 'wait_primary'
    PRIMARY_STATE = 'primary'
    DRAINING_STATE = 'draining'
    DEMOTE_TIMEOUT_STATE = 'demote_timeout'
    DEMOTED_STATE = 'demoted'
    CATCHINGUP_STATE = 'catchingup'
    SECONDARY_STATE = 'secondary'
    PREP_PROMOTION_STATE = 'prepare_promotion'
    STOP_REPLICATION_STATE = 'stop_replication'
    WAIT_STANDBY_STATE = 'wait_standby'
    MAINTENANCE_STATE = 'maintenance'
    ANY_STATE = '#any state#'

    def __repr__(self) -> str:
        """Get an "official" string representation of a :class:`NodeState` member."""
        return self.value

    def __str__(self) -> str:
        """Get a string representation of a :class:`NodeState` member."""
        return self.__repr__()

    @property
    def is_role(self) -> bool:
        """``True`` for members that a node may actually be in."""
        return self not in (NodeState.NO_STATE, NodeState.ANY_STATE)

    @classmethod
    def from_string(cls, value: str) -> 'NodeState':
        """Parse *value* as a :class:`NodeState`.

        :param value: either the state name (``wait_standby``) or the member identifier (``WAIT_STANDBY_STATE``),
            case insensitive.

        :returns: the matching :class:`NodeState` member.

        :raises:
            :exc:`~pgkeeper.exceptions.InvalidNodeState`: if *value* does not name a known state.

        :Example:

            >>> NodeState.from_string('wait_standby')
            wait_standby

            >>> NodeState.from_string('SECONDARY_STATE')
            secondary
        """
        lowered = str(value).strip().lower()
        for state in cls:
            if lowered in (state.value, state.name.lower()):
                return state
        raise InvalidNodeState('Unknown node state "{0}"'.format(value))


class KeeperState(object):
    """In-memory copy of the keeper state file.

    :ivar current_role: role the local instance is configured as.
    :ivar assigned_role: role the node has been asked to reach.
    :ivar current_node_id: node id given by the monitor, ``0`` until registered.
    :ivar current_group: group id given by the monitor.
    :ivar pg_is_running: whether PostgreSQL was running the last time it was checked.
    :ivar current_lsn: last known WAL position of the local instance, ``0`` when never known.
    :ivar sync_state: replication sync state reported by the local instance, possibly empty.
    :ivar last_monitor_contact: UNIX timestamp of the last successful node active call, ``0`` if never.
    """

    _INT_FIELDS = ('current_node_id', 'current_group', 'current_lsn')

    def __init__(self, current_role: NodeState = NodeState.INIT_STATE,
                 assigned_role: NodeState = NodeState.INIT_STATE,
                 current_node_id: int = 0, current_group: int = 0,
                 pg_is_running: bool = False, current_lsn: int = 0, sync_state: str = '',
                 last_monitor_contact: float = 0.0) -> None:
        self.current_role = current_role
        self.assigned_role = assigned_role
        self.current_node_id = current_node_id
        self.current_group = current_group
        self.pg_is_running = pg_is_running
        self.current_lsn = current_lsn
        self.sync_state = sync_state
        self.last_monitor_contact = last_monitor_contact

    @property
    def is_registered(self) -> bool:
        """``True`` once the monitor has assigned a node id."""
        return self.current_node_id > 0

    @property
    def transition_pending(self) -> bool:
        return self.current_role != self.assigned_role

    def to_dict(self) -> Dict[str, Any]:
        """Get the state as a :class:`dict` ready to be serialized."""
        return {
            'version': STATE_FORMAT_VERSION,
            'current_role': self.current_role.value,
            'assigned_role': self.assigned_role.value,
            'current_node_id': self.current_node_id,
            'current_group': self.current_group,
            'pg_is_running': self.pg_is_running,
            'current_lsn': self.current_lsn,
            'sync_state': self.sync_state,
            'last_monitor_contact': self.last_monitor_contact,
        }

    def as_json(self) -> str:
        """Serialize the state as stable JSON, keys sorted."""
        return json.dumps(self.to_dict(), indent=4, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Any) -> 'KeeperState':
        """Build a :class:`KeeperState` from its serialized form, checking that it is structurally valid.

        :param data: the deserialized JSON document.

        :returns: a new :class:`KeeperState` instance.

        :raises:
            :exc:`~pgkeeper.exceptions.CorruptState`: if anything in *data* is missing, of the wrong type, or out of
            range.
        """
        if not isinstance(data, dict):
            raise CorruptState('state is not a JSON object')

        version = data.get('version')
        if version != STATE_FORMAT_VERSION:
            raise CorruptState('unsupported state format version: {0!r}'.format(version))

        roles: Dict[str, NodeState] = {}
        for name in ('current_role', 'assigned_role'):
            try:
                roles[name] = NodeState.from_string(data[name])
            except (KeyError, InvalidNodeState) as e:
                raise CorruptState('invalid {0}: {1!r}'.format(name, data.get(name))) from e
            if not roles[name].is_role:
                raise CorruptState('invalid {0}: {1!r}'.format(name, data[name]))

        values: Dict[str, int] = {}
        for name in cls._INT_FIELDS:
            value = data.get(name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise CorruptState('invalid {0}: {1!r}'.format(name, value))
            values[name] = value

        pg_is_running = data.get('pg_is_running')
        if not isinstance(pg_is_running, bool):
            raise CorruptState('invalid pg_is_running: {0!r}'.format(pg_is_running))

        sync_state = data.get('sync_state')
        if not isinstance(sync_state, str):
            raise CorruptState('invalid sync_state: {0!r}'.format(sync_state))

        last_monitor_contact = data.get('last_monitor_contact', 0)
        if not isinstance(last_monitor_contact, (int, float)) or isinstance(last_monitor_contact, bool):
            raise CorruptState('invalid last_monitor_contact: {0!r}'.format(last_monitor_contact))

        return cls(roles['current_role'], roles['assigned_role'], values['current_node_id'], values['current_group'],
                   pg_is_running, values['current_lsn'], sync_state, float(last_monitor_contact))

    def copy(self) -> 'KeeperState':
        return KeeperState.from_dict(self.to_dict())

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, KeeperState) and self.to_dict() == other.to_dict()

    def __ne__(self, other: Any) -> bool:
        return not self.__eq__(other)

    def __repr__(self) -> str:
        return ('KeeperState(current_role={0}, assigned_role={1}, current_node_id={2}, current_group={3})'
                .format(self.current_role, self.assigned_role, self.current_node_id, self.current_group))


def read_state(path: str) -> KeeperState:
    """Read the keeper state from *path*.

    :param path: path to the state file.

    :returns: the state stored in the file.

    :raises:
        :exc:`~pgkeeper.exceptions.KeeperStateError`: if the file does not exist or can't be read.
        :exc:`~pgkeeper.exceptions.CorruptState`: if the content of the file isn't a valid state.
    """
    try:
        with open(path, 'rb') as f:
            content = f.read()
    except FileNotFoundError as e:
        raise KeeperStateError('State file "{0}" does not exist'.format(path)) from e
    except OSError as e:
        raise KeeperStateError('Failed to read state file "{0}": {1}'.format(path, e)) from e

    try:
        data = json.loads(content.decode('utf-8'))
    except ValueError as e:
        raise CorruptState('State file "{0}" is not valid JSON: {1}'.format(path, e)) from e

    try:
        return KeeperState.from_dict(data)
    except CorruptState as e:
        raise CorruptState('State file "{0}" is corrupt: {1}'.format(path, e.value)) from e


def write_state(path: str, state: KeeperState) -> None:
    """Atomically replace the content of *path* with *state*.

    The new content goes to a temporary file in the same directory, is flushed to disk, then renamed over *path*.
    The directory itself is flushed afterwards so that the rename survives a crash.

    :param path: path to the state file.
    :param state: the state to write.

    :raises:
        :exc:`~pgkeeper.exceptions.KeeperStateError`: if the file could not be written; *path* is left untouched.
    """
    directory = os.path.dirname(os.path.abspath(path))
    content = (state.as_json() + '\n').encode('utf-8')
    tmp_path: Optional[str] = None
    try:
        fd, tmp_path = tempfile.mkstemp(prefix='.' + os.path.basename(path) + '.', suffix='.tmp', dir=directory)
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
        fsync_dir(directory)
    except OSError as e:
        raise KeeperStateError('Failed to write state file "{0}": {1}'.format(path, e)) from e
    finally:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
    logger.debug('Wrote keeper state to "%s": %r', path, state)


def create_state_file(path: str, force: bool = False, state: Optional[KeeperState] = None) -> KeeperState:
    """Initialize a new state file at *path*.

    :param path: path to the state file.
    :param force: replace an existing state file. Used for explicit re-initialization only, the previous node
        identity is lost.
    :param state: initial content, a fresh ``init``/``init`` state with no identifiers when not given.

    :returns: the state written to the file.

    :raises:
        :exc:`~pgkeeper.exceptions.KeeperStateError`: if a state file already exists at *path* and *force* is not set.
    """
    if os.path.exists(path):
        if not force:
            raise KeeperStateError('State file "{0}" already exists'.format(path))
        logger.warning('Replacing existing state file "%s"', path)

    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        raise KeeperStateError('Failed to create directory "{0}": {1}'.format(directory, e)) from e

    state = state or KeeperState()
    write_state(path, state)
    logger.info('Initialized keeper state in "%s"', path)
    return state
