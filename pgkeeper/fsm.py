"""Keeper finite state machine.

The state machine is a directed graph of :class:`~pgkeeper.state.NodeState` roles. An edge exists for every
``(current, assigned)`` pair the keeper knows how to handle, and carries the action that moves the local instance from
one role to the other. Edges are looked up, never computed: a pair that is not in :data:`TRANSITIONS` is a protocol
violation.

:var TRANSITIONS: read-only mapping of ``(current role, assigned role)`` to :class:`Transition`.
"""
import logging

from collections import deque
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple, TYPE_CHECKING

from . import fsm_transition as action
from .exceptions import NoTransitionDefined, PostgresException, TransitionFailed
from .state import NodeState

if TYPE_CHECKING:  # pragma: no cover
    from .keeper import Keeper

logger = logging.getLogger(__name__)


class Transition(NamedTuple):
    """An edge of the state machine.

    :ivar comment: what happens when the node follows this edge.
    :ivar action: function run to follow it.
    """

    comment: str
    action: Callable[['Keeper', NodeState], NodeState]


class StepOutcome(str, Enum):
    """How far a step went."""

    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILED = 'failed'

    def __repr__(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


class StepResult(NamedTuple):
    """Result of one step: the role the node is in now, and the outcome."""

    role: NodeState
    outcome: StepOutcome


def _build_transitions() -> Mapping[Tuple[NodeState, NodeState], Transition]:
    S = NodeState
    table: Dict[Tuple[NodeState, NodeState], Transition] = {}

    def edge(sources: Tuple[NodeState, ...], targets: Tuple[NodeState, ...], comment: str,
             func: Callable[['Keeper', NodeState], NodeState]) -> None:
        for source in sources:
            for target in targets:
                table[(source, target)] = Transition(comment, func)

    edge((S.INIT_STATE,), (S.SINGLE_STATE,),
         'Start as a single node', action.init_primary)
    edge((S.INIT_STATE,), (S.WAIT_STANDBY_STATE,),
         'Start as a standby, waiting for the primary to be ready', action.no_op)
    edge((S.SINGLE_STATE,), (S.WAIT_PRIMARY_STATE,),
         'A new standby joined, get ready to replicate', action.prepare_replication)
    edge((S.SINGLE_STATE,), (S.DEMOTED_STATE,),
         'Demote the single node', action.stop_postgres)
    edge((S.WAIT_PRIMARY_STATE,), (S.PRIMARY_STATE,),
         'A healthy standby is there, enable synchronous replication', action.enable_sync_rep)
    edge((S.PRIMARY_STATE,), (S.WAIT_PRIMARY_STATE,),
         'The standby is unhealthy, disable synchronous replication', action.disable_sync_rep)
    edge((S.PRIMARY_STATE, S.WAIT_PRIMARY_STATE), (S.SINGLE_STATE,),
         'The standby was removed, disable synchronous replication', action.disable_sync_rep)
    edge((S.PRIMARY_STATE,), (S.DRAINING_STATE, S.DEMOTED_STATE, S.DEMOTE_TIMEOUT_STATE),
         'Demote the primary', action.stop_postgres)
    edge((S.WAIT_PRIMARY_STATE,), (S.DEMOTED_STATE, S.DEMOTE_TIMEOUT_STATE),
         'Demote the primary waiting for a standby', action.stop_postgres)
    edge((S.DRAINING_STATE,), (S.DEMOTED_STATE, S.DEMOTE_TIMEOUT_STATE),
         'Demote the primary after draining', action.stop_postgres)
    edge((S.DEMOTE_TIMEOUT_STATE,), (S.DEMOTED_STATE,),
         'Demote timed out, make sure PostgreSQL is stopped', action.stop_postgres)
    edge((S.DEMOTED_STATE,), (S.CATCHINGUP_STATE,),
         'Rejoin as a standby of the new primary', action.rejoin_as_standby)
    edge((S.DEMOTED_STATE,), (S.WAIT_STANDBY_STATE,),
         'Stay stopped, waiting for the primary to accept a standby', action.ensure_stopped)
    edge((S.WAIT_STANDBY_STATE,), (S.CATCHINGUP_STATE,),
         'The primary is ready, initialize the standby', action.init_standby)
    edge((S.WAIT_STANDBY_STATE,), (S.SECONDARY_STATE,),
         'The primary is ready, initialize the standby and wait for it to stream', action.init_standby)
    edge((S.CATCHINGUP_STATE,), (S.SECONDARY_STATE,),
         'The standby caught up', action.check_streaming)
    edge((S.SECONDARY_STATE,), (S.CATCHINGUP_STATE,),
         'The standby fell behind', action.no_op)
    edge((S.SECONDARY_STATE, S.CATCHINGUP_STATE), (S.PREP_PROMOTION_STATE,),
         'Get ready to be promoted', action.check_running)
    edge((S.PREP_PROMOTION_STATE,), (S.STOP_REPLICATION_STATE,),
         'Stop replication and promote the standby', action.promote_standby)
    edge((S.STOP_REPLICATION_STATE,), (S.WAIT_PRIMARY_STATE,),
         'Finish the promotion', action.promote_standby)
    edge((S.PREP_PROMOTION_STATE,), (S.WAIT_PRIMARY_STATE,),
         'Promote the standby', action.promote_standby)
    edge((S.SECONDARY_STATE, S.CATCHINGUP_STATE), (S.SINGLE_STATE,),
         'The primary was removed, promote the standby', action.promote_standby)
    edge((S.SECONDARY_STATE, S.CATCHINGUP_STATE), (S.MAINTENANCE_STATE,),
         'Stop the standby for maintenance', action.stop_postgres)
    edge((S.MAINTENANCE_STATE,), (S.CATCHINGUP_STATE,),
         'Maintenance is over, restart the standby', action.restart_standby)
    return MappingProxyType(table)


TRANSITIONS = _build_transitions()


def reachable_states(current: NodeState) -> List[NodeState]:
    """Get the roles reachable in one step from *current*, in table order."""
    return [target for source, target in TRANSITIONS if source == current]


def get_transition(current: NodeState, assigned: NodeState) -> Transition:
    """Get the edge from *current* to *assigned*.

    :raises:
        :exc:`~pgkeeper.exceptions.NoTransitionDefined`: if there is no such edge.
    """
    try:
        return TRANSITIONS[(current, assigned)]
    except KeyError:
        raise NoTransitionDefined(current, assigned)


def step(keeper: 'Keeper', target: Optional[NodeState] = None) -> StepResult:
    """Follow one edge of the state machine.

    .. note::
        The keeper state is not modified, applying the result is up to the caller.

    :param keeper: the keeper, its current role is where the step starts.
    :param target: role to reach, the assigned role of the keeper when not given.

    :returns: the role reached and how far the step went.

    :raises:
        :exc:`~pgkeeper.exceptions.NoTransitionDefined`: if the state machine has no edge to *target*.
    """
    current = keeper.state.current_role
    target = target or keeper.state.assigned_role
    if current == target:
        return StepResult(current, StepOutcome.SUCCESS)

    transition = get_transition(current, target)
    logger.info('Transition from "%s" to "%s": %s', current, target, transition.comment)
    try:
        reached = transition.action(keeper, target)
    except TransitionFailed as e:
        logger.error('Failed to transition from "%s" to "%s": %s', current, target, e.value)
        return StepResult(e.reached or current, StepOutcome.FAILED)
    except PostgresException as e:
        logger.error('Failed to transition from "%s" to "%s": %s', current, target, e.value)
        return StepResult(current, StepOutcome.FAILED)

    if reached == target:
        logger.info('Transition complete: current state is now "%s"', reached)
        return StepResult(reached, StepOutcome.SUCCESS)
    logger.info('Transition to "%s" is in progress: current state is now "%s"', target, reached)
    return StepResult(reached, StepOutcome.PARTIAL)


def find_path(current: NodeState, goal: NodeState) -> Optional[List[NodeState]]:
    """Find the shortest sequence of roles leading from *current* to *goal*.

    :returns: the roles to go through, *goal* included and *current* excluded. An empty list when *current* is *goal*,
        ``None`` when *goal* can't be reached.

    :Example:

        >>> find_path(NodeState.SINGLE_STATE, NodeState.WAIT_STANDBY_STATE)
        [demoted, wait_standby]

        >>> find_path(NodeState.INIT_STATE, NodeState.INIT_STATE)
        []

        >>> find_path(NodeState.SINGLE_STATE, NodeState.INIT_STATE) is None
        True
    """
    if current == goal:
        return []

    previous: Dict[NodeState, NodeState] = {}
    queue = deque([current])
    while queue:
        node = queue.popleft()
        for target in reachable_states(node):
            if target == current or target in previous:
                continue
            previous[target] = node
            if target == goal:
                path = [goal]
                while previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return path[::-1]
            queue.append(target)
    return None


def reach_assigned_state(keeper: 'Keeper') -> bool:
    """Step until the current role of the keeper is its assigned role.

    Every hop starts from fresh facts of the local instance, and every role reached on the way is persisted before
    trying the next hop.

    :returns: ``True`` when the assigned role has been reached, ``False`` if a step failed or stopped short.

    :raises:
        :exc:`~pgkeeper.exceptions.NoTransitionDefined`: if the assigned role can't be reached. Nothing is done in
            this case.
    """
    current = keeper.state.current_role
    assigned = keeper.state.assigned_role
    path = find_path(current, assigned)
    if path is None:
        raise NoTransitionDefined(current, assigned)

    for hop in path:
        keeper.refresh_local_facts()
        result = step(keeper, hop)
        keeper.apply_step_result(result)
        if result.role != hop:
            return False
    return keeper.state.current_role == keeper.state.assigned_role


def as_graphviz() -> str:
    """Render the state machine as a graphviz ``dot`` program."""
    lines = ['digraph pgkeeper_fsm {', '    size="12,6";', '    node [shape=box];']
    for (source, target), transition in TRANSITIONS.items():
        lines.append('    "{0}" -> "{1}" [label="{2}"];'.format(source, target, transition.comment))
    lines.append('}')
    return '\n'.join(lines) + '\n'
