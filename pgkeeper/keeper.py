"""The keeper: owner of the local state, bridge between the monitor and the local instance.

A round of the keeper always goes in the same order: refresh the facts of the local instance, report them to the
monitor, persist what the monitor assigned, and only then run the transition toward it. A crash anywhere in a round
leaves a state file the next round can resume from.
"""
import logging
import os
import time

from threading import Lock
from typing import cast, Optional, TYPE_CHECKING

from . import fsm
from .exceptions import ConfigParseError, KeeperException, KeeperStateError, MonitorRejected, \
    NoTransitionDefined, RegistrationRejected
from .fsm import StepOutcome, StepResult
from .monitor import AssignedState, Monitor, NodeAddress
from .postgresql import AbstractPostgresql, LocalFacts, Postgresql
from .state import create_state_file, KeeperState, NodeState, read_state, write_state

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)


class Keeper(object):
    """State of one keeper and the collaborators it drives.

    :ivar config: pgkeeper configuration.
    :ivar state: in-memory copy of the state file, written back with :meth:`store_state`.
    :ivar postgresql: probe of the local instance.
    :ivar monitor: monitor client, ``None`` when the monitor is disabled.
    :ivar facts: facts of the local instance as of the last :meth:`refresh_local_facts`.
    :ivar other_node: operator supplied primary, used instead of asking the monitor.
    """

    def __init__(self, config: 'Config', state: KeeperState, postgresql: AbstractPostgresql,
                 monitor: Optional[Monitor] = None) -> None:
        self.config = config
        self.state = state
        self.postgresql = postgresql
        self.monitor = monitor
        self.facts = LocalFacts.unknown()
        self.other_node: Optional[NodeAddress] = None
        self._round_lock = Lock()

    @staticmethod
    def _get_postgresql(config: 'Config', postgresql: Optional[AbstractPostgresql]) -> AbstractPostgresql:
        return postgresql or Postgresql(config['postgresql'])

    @staticmethod
    def _get_monitor(config: 'Config', monitor: Optional[Monitor]) -> Optional[Monitor]:
        if monitor is None and not config.monitor_disabled:
            monitor = Monitor(config['monitor'])
        return monitor

    @classmethod
    def init(cls, config: 'Config', postgresql: Optional[AbstractPostgresql] = None,
             monitor: Optional[Monitor] = None) -> 'Keeper':
        """Load an existing keeper from its state file.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperStateError`: if the state file is missing.
            :exc:`~pgkeeper.exceptions.CorruptState`: if the state file is not valid.
            :exc:`~pgkeeper.exceptions.ConfigParseError`: if the monitor connection string is invalid.
        """
        state = read_state(config.state_file)
        return cls(config, state, cls._get_postgresql(config, postgresql), cls._get_monitor(config, monitor))

    @classmethod
    def create(cls, config: 'Config', force: bool = False, postgresql: Optional[AbstractPostgresql] = None,
               monitor: Optional[Monitor] = None) -> 'Keeper':
        """Create a new state file, and store the current facts of the local instance in it.

        :param force: replace an existing state file.
        """
        postgresql = cls._get_postgresql(config, postgresql)
        monitor = cls._get_monitor(config, monitor)
        state = create_state_file(config.state_file, force)
        keeper = cls(config, state, postgresql, monitor)
        keeper.refresh_local_facts()
        keeper.store_state()
        return keeper

    @classmethod
    def register_and_init(cls, config: 'Config', initial_role: NodeState,
                          postgresql: Optional[AbstractPostgresql] = None,
                          monitor: Optional[Monitor] = None) -> 'Keeper':
        """Register the node with the monitor and create its state file.

        Nothing is written unless the monitor accepted the registration.

        :param initial_role: the role the node registers with.

        :raises:
            :exc:`~pgkeeper.exceptions.ConfigParseError`: if the monitor is disabled.
            :exc:`~pgkeeper.exceptions.KeeperStateError`: if a state file already exists.
            :exc:`~pgkeeper.exceptions.RegistrationRejected`: if the local instance doesn't fit *initial_role*, or the
                monitor refused the registration.
        """
        if config.monitor_disabled:
            raise ConfigParseError('Can not register this node: the monitor is disabled')
        if os.path.exists(config.state_file):
            raise KeeperStateError('State file "{0}" already exists, this node is already registered'
                                   .format(config.state_file))

        postgresql = cls._get_postgresql(config, postgresql)
        monitor = cast(Monitor, cls._get_monitor(config, monitor))

        keeper = cls(config, KeeperState(), postgresql, monitor)
        keeper._check_initial_role(initial_role)
        facts = keeper.refresh_local_facts()

        assigned = monitor.register_node(config['formation'], config.get('group'), config['nodename'],
                                         config['postgresql']['port'], config['postgresql']['dbname'],
                                         initial_role, facts)

        state = KeeperState(initial_role, assigned.state, assigned.node_id, assigned.group_id,
                            facts.pg_is_running, facts.current_lsn, facts.sync_state, time.time())
        keeper.state = create_state_file(config.state_file, state=state)
        return keeper

    def _check_initial_role(self, initial_role: NodeState) -> None:
        if not initial_role.is_role:
            raise RegistrationRejected('Can not register in state "{0}"'.format(initial_role))

        postgresql = self.postgresql
        if initial_role == NodeState.SINGLE_STATE and postgresql.data_directory_empty():
            raise RegistrationRejected('Can not register as "{0}": the data directory is empty'.format(initial_role))
        if initial_role == NodeState.WAIT_STANDBY_STATE and postgresql.is_running():
            raise RegistrationRejected('Can not register as "{0}": PostgreSQL is running'.format(initial_role))

    def _query_local_facts(self) -> LocalFacts:
        try:
            facts = self.postgresql.facts()
        except Exception:
            logger.exception('Failed to get the state of the local PostgreSQL instance')
            facts = LocalFacts.unknown()
        self.facts = facts
        return facts

    def _record_facts(self, facts: LocalFacts) -> None:
        self.state.pg_is_running = facts.pg_is_running
        self.state.sync_state = facts.sync_state
        self.state.current_lsn = max(self.state.current_lsn, facts.current_lsn)

    def refresh_local_facts(self) -> LocalFacts:
        """Query the local instance for its current facts.

        .. note::
            Never raises: when the instance can't be queried the facts are considered unknown, which keeps every
            transition that needs a running instance from happening. The recorded write position never goes back.

        :returns: the fresh facts, also stored in :attr:`facts` and in the state snapshot.
        """
        facts = self._query_local_facts()
        self._record_facts(facts)
        return facts

    def store_state(self) -> None:
        write_state(self.config.state_file, self.state)

    def state_as_json(self) -> str:
        return self.state.as_json()

    def apply_step_result(self, result: StepResult) -> None:
        """Persist the role reached by a step."""
        if result.role != self.state.current_role:
            self.state.current_role = result.role
            self.store_state()

    def get_primary_node(self) -> NodeAddress:
        """Get the primary to follow.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperStateError`: if no primary was given and the monitor is disabled.
            :exc:`~pgkeeper.exceptions.NoPrimaryYet`: if the monitor doesn't know about a primary.
        """
        if self.other_node is not None:
            return self.other_node
        if self.monitor is None:
            raise KeeperStateError('No primary node given and the monitor is disabled')
        return self.monitor.get_primary(self.config['formation'], self.state.current_group)

    def step_once(self) -> StepResult:
        """Take one step toward the assigned role, without contacting the monitor.

        The facts of the local instance are refreshed first, and the reached role is persisted before returning,
        whatever the outcome.
        """
        if self.state.transition_pending:
            self.refresh_local_facts()
        return self._take_step()

    def _take_step(self) -> StepResult:
        if not self.state.transition_pending:
            return StepResult(self.state.current_role, StepOutcome.SUCCESS)

        path = fsm.find_path(self.state.current_role, self.state.assigned_role)
        target = path[0] if path else self.state.assigned_role
        result = fsm.step(self, target)
        self.apply_step_result(result)
        if result.outcome == StepOutcome.SUCCESS and self.state.transition_pending:
            result = StepResult(result.role, StepOutcome.PARTIAL)
        return result

    def assign_goal(self, goal: NodeState, other_node: Optional[NodeAddress] = None) -> bool:
        """Reach *goal* directly, bypassing the monitor.

        :param goal: the role to reach.
        :param other_node: the primary to follow for standby roles.

        :returns: ``True`` when *goal* has been reached.

        :raises:
            :exc:`~pgkeeper.exceptions.NoTransitionDefined`: if *goal* can't be reached from the current role. The
                state is left untouched in this case.
        """
        if fsm.find_path(self.state.current_role, goal) is None:
            raise NoTransitionDefined(self.state.current_role, goal)

        self.other_node = other_node
        self.state.assigned_role = goal
        self.store_state()
        return fsm.reach_assigned_state(self)

    def report_to_monitor(self) -> AssignedState:
        """Report the current role and facts, and persist the assignment the monitor answers with.

        The fresh facts only make it into the state together with the assignment: when the monitor can't be
        reached, or answers for another node, the state is left untouched.

        :raises:
            :exc:`~pgkeeper.exceptions.MonitorError`: if the monitor can't be reached or refuses the report.
            :exc:`~pgkeeper.exceptions.MonitorRejected`: if the answer is for another node or another group.
        """
        if self.monitor is None:
            raise ConfigParseError('The monitor is disabled')

        facts = self._query_local_facts()
        assigned = self.monitor.node_active(self.config['formation'], self.config['nodename'],
                                            self.config['postgresql']['port'], self.state.current_node_id,
                                            self.state.current_group, self.state.current_role, facts)

        if assigned.node_id != self.state.current_node_id or assigned.group_id != self.state.current_group:
            raise MonitorRejected('monitor assigned node {0} in group {1}, this is node {2} in group {3}'
                                  .format(assigned.node_id, assigned.group_id,
                                          self.state.current_node_id, self.state.current_group))

        if assigned.state != self.state.assigned_role:
            logger.info('Monitor assigned new state "%s"', assigned.state)
        self._record_facts(facts)
        self.state.assigned_role = assigned.state
        self.state.last_monitor_contact = time.time()
        self.store_state()
        return assigned

    def reconcile_with_monitor(self) -> StepResult:
        """Run one round: report to the monitor, then step toward the assigned role.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperException`: if another round is already running.
        """
        if not self._round_lock.acquire(False):
            raise KeeperException('A reconciliation round is already in progress')
        try:
            self.report_to_monitor()
            return self._take_step()
        finally:
            self._round_lock.release()
