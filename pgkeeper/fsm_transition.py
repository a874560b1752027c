"""Actions bound to the edges of the keeper state machine.

Each action is called with the keeper and the role the node should reach, runs whatever the local instance needs for
it and returns the role actually reached. An action that can't make the transition raises
:exc:`~pgkeeper.exceptions.TransitionFailed`. Preconditions are checked against the facts the keeper refreshed last.
"""
import logging

from typing import TYPE_CHECKING

from .exceptions import TransitionFailed
from .state import NodeState

if TYPE_CHECKING:  # pragma: no cover
    from .keeper import Keeper

logger = logging.getLogger(__name__)


def no_op(keeper: 'Keeper', target: NodeState) -> NodeState:
    return target


def init_primary(keeper: 'Keeper', target: NodeState) -> NodeState:
    """Start the local instance as a primary with no standby."""
    if not keeper.postgresql.start():
        raise TransitionFailed('failed to start PostgreSQL')
    return target


def prepare_replication(keeper: 'Keeper', target: NodeState) -> NodeState:
    """Make sure the primary runs before a standby connects to it."""
    if not keeper.postgresql.start():
        raise TransitionFailed('failed to start PostgreSQL before accepting a standby')
    return target


def enable_sync_rep(keeper: 'Keeper', target: NodeState) -> NodeState:
    if not keeper.postgresql.set_synchronous_replication(True):
        raise TransitionFailed('failed to enable synchronous replication')
    return target


def disable_sync_rep(keeper: 'Keeper', target: NodeState) -> NodeState:
    if not keeper.postgresql.set_synchronous_replication(False):
        raise TransitionFailed('failed to disable synchronous replication')
    return target


def stop_postgres(keeper: 'Keeper', target: NodeState) -> NodeState:
    if not keeper.postgresql.demote():
        raise TransitionFailed('failed to stop PostgreSQL')
    return target


def rejoin_as_standby(keeper: 'Keeper', target: NodeState) -> NodeState:
    """Follow the current primary after having been demoted."""
    primary = keeper.get_primary_node()
    if not keeper.postgresql.enable_streaming(primary):
        raise TransitionFailed('failed to set up streaming from {0}'.format(primary))
    return target


def init_standby(keeper: 'Keeper', target: NodeState) -> NodeState:
    """Initialize the local instance as a standby of the primary.

    Reaching ``secondary`` needs the standby to be streaming already. Until it is, the node stops at ``catchingup``.
    """
    primary = keeper.get_primary_node()
    if not keeper.postgresql.enable_streaming(primary):
        raise TransitionFailed('failed to initialize standby from {0}'.format(primary))
    if target == NodeState.SECONDARY_STATE and not keeper.postgresql.is_streaming():
        logger.info('Standby is not streaming from %s yet', primary)
        return NodeState.CATCHINGUP_STATE
    return target


def check_streaming(keeper: 'Keeper', target: NodeState) -> NodeState:
    if keeper.postgresql.is_streaming():
        return target
    logger.info('Standby is still catching up')
    return NodeState.CATCHINGUP_STATE


def ensure_stopped(keeper: 'Keeper', target: NodeState) -> NodeState:
    if not keeper.postgresql.stop():
        raise TransitionFailed('failed to stop PostgreSQL')
    return target


def check_running(keeper: 'Keeper', target: NodeState) -> NodeState:
    if not keeper.facts.pg_is_running:
        raise TransitionFailed('PostgreSQL is not running')
    return target


def promote_standby(keeper: 'Keeper', target: NodeState) -> NodeState:
    """Promote the local standby.

    Needs the instance to run and to have reported a WAL position, anything else would risk promoting a standby that
    never received anything from the primary.
    """
    if not keeper.facts.pg_is_running:
        raise TransitionFailed('can not promote: PostgreSQL is not running')
    if keeper.facts.current_lsn <= 0:
        raise TransitionFailed('can not promote: the current WAL position is unknown')
    if not keeper.postgresql.promote():
        raise TransitionFailed('failed to promote PostgreSQL')
    return target


def restart_standby(keeper: 'Keeper', target: NodeState) -> NodeState:
    """Bring a standby back after maintenance."""
    primary = keeper.get_primary_node()
    if not keeper.postgresql.enable_streaming(primary):
        raise TransitionFailed('failed to restart standby')
    return target
