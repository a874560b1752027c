import json
import os

from unittest.mock import Mock, patch

from click.testing import CliRunner

from pgkeeper.ctl import ctl, ExitCode, format_config_for_editing, KeeperCtlException, parse_node_state
from pgkeeper.exceptions import MonitorUnreachable, NoPrimaryYet, RegistrationRejected
from pgkeeper.monitor import AssignedState, NodeAddress
from pgkeeper.state import create_state_file, KeeperState, NodeState
from pgkeeper.version import __version__

from . import BaseTestCase, FakePostgresql

S = NodeState


class TestCtl(BaseTestCase):

    def setUp(self):
        super(TestCtl, self).setUp()
        self.runner = CliRunner()
        self.postgresql = FakePostgresql(running=True, lsn=50331744)
        self.monitor = Mock()
        for target in ('pgkeeper.keeper.Postgresql', 'pgkeeper.keeper.Monitor', 'pgkeeper.ctl.Monitor'):
            patcher = patch(target, Mock(return_value=self.postgresql if target.endswith('Postgresql')
                                         else self.monitor))
            patcher.start()
            self.addCleanup(patcher.stop)

    def invoke(self, *args, **overrides):
        self.write_config(**overrides)
        return self.runner.invoke(ctl, ['-c', self.config_file, 'do'] + list(args))

    def create_state(self, current, assigned=None):
        return create_state_file(self.state_file, state=KeeperState(current, assigned or current, 1, 0))

    def stored_state_bytes(self):
        with open(self.state_file, 'rb') as f:
            return f.read()

    def test_version(self):
        result = self.runner.invoke(ctl, ['--version'])
        self.assertEqual(result.exit_code, 0)
        self.assertIn(__version__, result.output)

    def test_bad_config(self):
        result = self.runner.invoke(ctl, ['-c', os.path.join(self.tmpdir, 'missing.yml'), 'do', 'fsm', 'state'])
        self.assertEqual(result.exit_code, ExitCode.BAD_CONFIG)
        self.assertIn('does not exist', result.output)

        result = self.invoke('fsm', 'state', loop_wait=0)
        self.assertEqual(result.exit_code, ExitCode.BAD_CONFIG)

    def test_fsm_init(self):
        result = self.invoke('fsm', 'init')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.read_stored().current_lsn, 50331744)
        self.assertIn('"current_role": "init"', result.output)

        result = self.invoke('fsm', 'init')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)
        self.assertIn('already exists', result.output)

        result = self.invoke('fsm', 'init', '--force')
        self.assertEqual(result.exit_code, 0, result.output)

    def test_fsm_state(self):
        result = self.invoke('fsm', 'state')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)

        self.create_state(S.SINGLE_STATE)
        result = self.invoke('fsm', 'state')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('"pg_is_running": true', result.output)
        self.assertTrue(self.read_stored().pg_is_running)

        with open(self.state_file, 'w') as f:
            f.write('{"current_role": "bogus"}')
        result = self.invoke('fsm', 'state')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)
        self.assertIn('is corrupt', result.output)

    def test_fsm_list(self):
        self.create_state(S.SINGLE_STATE)
        result = self.invoke('fsm', 'list')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('Current state: single', result.output)
        self.assertIn('wait_primary', result.output)
        self.assertIn('Demote the single node', result.output)

        result = self.invoke('fsm', 'list', '-f', 'json')
        self.assertEqual(json.loads(result.output),
                         [{'State': 'wait_primary', 'Description': 'A new standby joined, get ready to replicate'},
                          {'State': 'demoted', 'Description': 'Demote the single node'}])

        result = self.invoke('fsm', 'list', '-f', 'tsv')
        self.assertEqual(result.output.splitlines()[0], 'State\tDescription')

    def test_fsm_gv(self):
        result = self.invoke('fsm', 'gv')
        self.assertEqual(result.exit_code, 0)
        self.assertTrue(result.output.startswith('digraph pgkeeper_fsm {'))

    def test_fsm_assign(self):
        self.create_state(S.SINGLE_STATE)
        result = self.invoke('fsm', 'assign', 'wait_standby', '10.0.0.2', '5433')
        self.assertEqual(result.exit_code, 0, result.output)
        stored = self.read_stored()
        self.assertEqual(stored.current_role, S.WAIT_STANDBY_STATE)
        self.assertEqual(stored.assigned_role, S.WAIT_STANDBY_STATE)
        self.assertEqual(self.postgresql.calls, ['demote', 'stop'])

        result = self.invoke('fsm', 'assign', 'catchingup', '10.0.0.2', '5433')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.postgresql.primary, NodeAddress(0, '10.0.0.2', 5433))

    def test_fsm_assign_bad_arguments(self):
        self.create_state(S.SINGLE_STATE)
        before = self.stored_state_bytes()
        for args in (('BOGUS_STATE',), ('#any state#',), ('wait_standby', '10.0.0.2'),
                     ('wait_standby', '10.0.0.2', 'port'), ('wait_standby', '10.0.0.2', '0')):
            result = self.invoke('fsm', 'assign', *args)
            self.assertEqual(result.exit_code, ExitCode.BAD_ARGS, args)
        self.assertEqual(self.stored_state_bytes(), before)
        self.assertEqual(self.postgresql.calls, [])

    def test_fsm_assign_unreachable(self):
        self.create_state(S.SINGLE_STATE)
        before = self.stored_state_bytes()
        result = self.invoke('fsm', 'assign', 'init')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)
        self.assertIn('does not know how to reach state "init" from "single"', result.output)
        self.assertEqual(self.stored_state_bytes(), before)

    def test_fsm_assign_fails(self):
        self.create_state(S.SINGLE_STATE)
        self.postgresql.failing.add('stop')
        result = self.invoke('fsm', 'assign', 'wait_standby')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)
        self.assertIn('current state is "demoted"', result.output)

    def test_fsm_step_local(self):
        self.create_state(S.INIT_STATE, S.SINGLE_STATE)
        result = self.invoke('fsm', 'step', monitor={'pguri': None, 'disabled': True})
        self.assertEqual(result.exit_code, ExitCode.BAD_CONFIG)
        self.assertIn('--local', result.output)

        self.postgresql.running = False
        result = self.invoke('fsm', 'step', '--local', monitor={'pguri': None, 'disabled': True})
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('init -> single', result.output)
        self.assertEqual(self.read_stored().current_role, S.SINGLE_STATE)
        self.monitor.node_active.assert_not_called()

    def test_fsm_step(self):
        self.create_state(S.SECONDARY_STATE)
        self.monitor.node_active.return_value = AssignedState(1, 0, S.PREP_PROMOTION_STATE)
        result = self.invoke('fsm', 'step')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('secondary -> prepare_promotion', result.output)

        self.postgresql.running = False
        self.monitor.node_active.return_value = AssignedState(1, 0, S.STOP_REPLICATION_STATE)
        result = self.invoke('fsm', 'step')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)
        self.assertIn('prepare_promotion -> prepare_promotion', result.output)
        self.assertNotIn('promote', self.postgresql.calls)

    def test_fsm_step_monitor_unreachable(self):
        self.create_state(S.SECONDARY_STATE)
        before = self.stored_state_bytes()
        self.monitor.node_active.side_effect = MonitorUnreachable('monitor is unreachable: timeout expired')
        result = self.invoke('fsm', 'step')
        self.assertEqual(result.exit_code, ExitCode.MONITOR)
        self.assertIn('timeout expired', result.output)
        self.assertEqual(self.stored_state_bytes(), before)

    def test_monitor_get_primary(self):
        self.monitor.get_primary.return_value = NodeAddress(1, '10.0.0.1', 5432)
        result = self.invoke('monitor', 'get', 'primary', '-f', 'tsv')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(result.output.splitlines(), ['Node\tHost\tPort\tState', '1\t10.0.0.1\t5432\tunknown'])
        self.monitor.get_primary.assert_called_once_with('default', 0)

        result = self.invoke('monitor', 'get', 'primary', '--group', '2')
        self.assertIn('Formation: default (group: 2)', result.output)

        self.monitor.get_primary.side_effect = NoPrimaryYet('no primary node in formation "default" group 0')
        result = self.invoke('monitor', 'get', 'primary')
        self.assertEqual(result.exit_code, ExitCode.MONITOR)

        result = self.invoke('monitor', 'get', 'primary', monitor={'pguri': None, 'disabled': True})
        self.assertEqual(result.exit_code, ExitCode.BAD_CONFIG)

    def test_monitor_get_others(self):
        self.monitor.get_other_nodes.return_value = [NodeAddress(2, '10.0.0.2', 5432, S.SECONDARY_STATE)]
        result = self.invoke('monitor', 'get', 'others', '--state', 'secondary', '-f', 'yaml')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('Host: 10.0.0.2', result.output)
        self.monitor.get_other_nodes.assert_called_once_with('10.0.0.1', 5432, S.SECONDARY_STATE)

        result = self.invoke('monitor', 'get', 'others', '--state', 'bogus')
        self.assertEqual(result.exit_code, ExitCode.BAD_ARGS)

    def test_monitor_get_coordinator(self):
        self.monitor.get_coordinator.return_value = NodeAddress(0, 'coordinator', 5432)
        result = self.invoke('monitor', 'get', 'coordinator')
        self.assertEqual(result.output, 'default coordinator:5432\n')

        self.monitor.get_coordinator.return_value = None
        result = self.invoke('monitor', 'get', 'coordinator')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('No coordinator is ready', result.output)

    def test_monitor_register(self):
        self.monitor.register_node.return_value = AssignedState(1, 0, S.SINGLE_STATE)
        result = self.invoke('monitor', 'register', 'init')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('default/0 10.0.0.1:5432 1:0 single', result.output)
        self.assertEqual(self.read_stored().assigned_role, S.SINGLE_STATE)

        result = self.invoke('monitor', 'register', 'init')
        self.assertEqual(result.exit_code, ExitCode.BAD_STATE)

    def test_monitor_register_rejected(self):
        self.monitor.register_node.side_effect = RegistrationRejected('monitor error: group 0 already has a primary')
        result = self.invoke('monitor', 'register', 'single')
        self.assertEqual(result.exit_code, ExitCode.MONITOR)
        self.assertFalse(os.path.exists(self.state_file))

        result = self.invoke('monitor', 'register', 'unknown')
        self.assertEqual(result.exit_code, ExitCode.BAD_ARGS)

        result = self.invoke('monitor', 'register', 'single', monitor={'pguri': None, 'disabled': True})
        self.assertEqual(result.exit_code, ExitCode.BAD_CONFIG)

    def test_monitor_active(self):
        self.create_state(S.SINGLE_STATE)
        self.monitor.node_active.return_value = AssignedState(1, 0, S.WAIT_PRIMARY_STATE)
        result = self.invoke('monitor', 'active')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('default/0 10.0.0.1:5432 1:0 wait_primary', result.output)
        stored = self.read_stored()
        self.assertEqual(stored.current_role, S.SINGLE_STATE)
        self.assertEqual(stored.assigned_role, S.WAIT_PRIMARY_STATE)

    def test_monitor_version(self):
        self.monitor.ensure_extension_version.return_value = '1.0'
        result = self.invoke('monitor', 'version')
        self.assertEqual(result.output, '1.0\n')

    def test_unexpected_error(self):
        self.create_state(S.SINGLE_STATE)
        with patch('pgkeeper.keeper.Keeper.refresh_local_facts', Mock(side_effect=RuntimeError('boom'))):
            result = self.invoke('fsm', 'state')
        self.assertEqual(result.exit_code, ExitCode.INTERNAL_ERROR)
        self.assertIn('boom', result.output)

    def test_parse_node_state(self):
        self.assertEqual(parse_node_state('PRIMARY_STATE'), S.PRIMARY_STATE)
        with self.assertRaises(KeeperCtlException) as ctx:
            parse_node_state('unknown')
        self.assertEqual(ctx.exception.exit_code, ExitCode.BAD_ARGS)

    def test_format_config_for_editing(self):
        self.assertEqual(format_config_for_editing({'a': [1]}), 'a:\n- 1\n')
