import os

from unittest.mock import patch

from pgkeeper.config import Config, default_state_file, default_validator
from pgkeeper.exceptions import ConfigParseError

from . import BaseTestCase, MONITOR_PGURI


class TestConfig(BaseTestCase):

    def test_load_file(self):
        config = self.get_config(group=1, postgresql={'replication': {'password': 'secret'}})
        self.assertEqual(config.config_file, self.config_file)
        self.assertEqual(config['formation'], 'default')
        self.assertEqual(config['group'], 1)
        self.assertEqual(config['loop_wait'], 5)
        self.assertEqual(config['monitor']['connect_timeout'], 5)
        self.assertEqual(config['postgresql']['port'], 5432)
        self.assertEqual(config['postgresql']['replication'],
                         {'username': 'pgautofailover_replicator', 'password': 'secret', 'sslmode': 'prefer'})
        self.assertEqual(config.state_file, self.state_file)
        self.assertFalse(config.monitor_disabled)
        self.assertIn('log', config)
        self.assertIsNone(config.get('name'))
        self.assertEqual(config.copy()['nodename'], '10.0.0.1')
        self.assertNotIn('loop_wait', config.local_configuration)

    def test_missing_file(self):
        self.assertRaises(ConfigParseError, Config, os.path.join(self.tmpdir, 'missing.yml'))

    def test_invalid_yaml(self):
        with open(self.config_file, 'w') as f:
            f.write('formation: [default\n')
        self.assertRaises(ConfigParseError, Config, self.config_file)
        with open(self.config_file, 'w') as f:
            f.write('- formation\n')
        self.assertRaises(ConfigParseError, Config, self.config_file)

    def test_validation(self):
        for overrides in ({'formation': ''}, {'group': -1}, {'group': True}, {'loop_wait': 0},
                          {'monitor': {'pguri': None}}, {'monitor': {'connect_timeout': 'soon'}},
                          {'postgresql': {'data_dir': None}}, {'postgresql': {'port': 70000}},
                          {'postgresql': {'pg_ctl_timeout': -1}}):
            self.assertRaises(ConfigParseError, self.get_config, **overrides)

        with self.assertRaises(ConfigParseError) as ctx:
            self.get_config(loop_wait=0, postgresql={'port': 0})
        self.assertEqual(ctx.exception.value.count('\n'), 1)
        self.assertRaises(ConfigParseError, default_validator, {})

    def test_monitor_disabled(self):
        config = self.get_config(monitor={'pguri': None, 'disabled': True})
        self.assertTrue(config.monitor_disabled)

    @patch.dict(os.environ, {'XDG_DATA_HOME': '/xdg'})
    def test_default_state_file(self):
        config = self.get_config(state_file=None)
        self.assertEqual(config.state_file,
                         os.path.join('/xdg', 'pgkeeper', self.data_dir.lstrip(os.sep), 'pgkeeper.state'))
        self.assertEqual(default_state_file('/data'), '/xdg/pgkeeper/data/pgkeeper.state')

    def test_environment(self):
        with patch.dict(os.environ, {'PGKEEPER_FORMATION': 'citus', 'PGKEEPER_GROUP': '3', 'PGKEEPER_LOOP_WAIT': '2',
                                     'PGKEEPER_MONITOR_DISABLED': 'on', 'PGKEEPER_POSTGRESQL_PORT': '5433',
                                     'PGKEEPER_LOG_LEVEL': 'DEBUG'}):
            config = self.get_config()
            self.assertNotIn('PGKEEPER_FORMATION', os.environ)
        self.assertEqual(config['formation'], 'citus')
        self.assertEqual(config['group'], 3)
        self.assertEqual(config['loop_wait'], 2)
        self.assertTrue(config.monitor_disabled)
        self.assertEqual(config['postgresql']['port'], 5433)
        self.assertEqual(config['log']['level'], 'DEBUG')

    def test_configuration_variable(self):
        document = 'formation: f\nmonitor: {{pguri: "{0}"}}\npostgresql: {{data_dir: {1}}}\nstate_file: {2}\n'.format(
            MONITOR_PGURI, self.data_dir, self.state_file)
        with patch.dict(os.environ, {Config.PGKEEPER_CONFIG_VARIABLE: document,
                                     'PGKEEPER_POSTGRESQL_DATA_DIR': '/pgdata'}):
            config = Config(None)
        self.assertIsNone(config.config_file)
        self.assertEqual(config['formation'], 'f')
        self.assertEqual(config['postgresql']['data_dir'], '/pgdata')
        self.assertEqual(config.state_file, self.state_file)

    def test_pgdata(self):
        with open(self.config_file, 'w') as f:
            f.write('monitor: {{pguri: "{0}"}}\n'.format(MONITOR_PGURI))
        with patch.dict(os.environ, {'PGDATA': self.data_dir}):
            config = Config(self.config_file)
        self.assertEqual(config['postgresql']['data_dir'], self.data_dir)

    def test_reload_local_configuration(self):
        config = self.get_config()
        self.assertIsNone(config.reload_local_configuration())

        self.write_config(loop_wait=10)
        self.assertTrue(config.reload_local_configuration())
        self.assertEqual(config['loop_wait'], 10)

        self.write_config(loop_wait=-10)
        self.assertIsNone(config.reload_local_configuration())
        self.assertEqual(config['loop_wait'], 10)
