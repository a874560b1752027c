import os

from unittest.mock import Mock, patch

import psutil

from pgkeeper import psycopg
from pgkeeper.exceptions import PostgresConnectionException, PostgresException
from pgkeeper.monitor import NodeAddress
from pgkeeper.postgresql import LocalFacts, Postgresql, STANDBY_CONFIG_FILE, STANDBY_SIGNAL_FILE
from pgkeeper.postmaster import PostmasterProcess

from . import BaseTestCase

mock_running = patch.object(PostmasterProcess, 'from_pidfile', Mock(return_value=Mock()))
mock_stopped = patch.object(PostmasterProcess, 'from_pidfile', Mock(return_value=None))


@patch('subprocess.call', Mock(return_value=0))
@patch('pgkeeper.postgresql.query')
class TestPostgresql(BaseTestCase):

    def setUp(self):
        super(TestPostgresql, self).setUp()
        self.p = Postgresql({'data_dir': self.data_dir, 'bin_dir': '/usr/lib/postgresql/16/bin', 'host': '/tmp',
                             'port': 5433, 'dbname': 'postgres', 'username': 'postgres', 'connect_timeout': 2,
                             'pg_ctl_timeout': 30, 'replication': {'username': 'replicator',
                                                                   'password': 'rep pass', 'sslmode': 'prefer'}})
        self.primary = NodeAddress(1, '10.0.0.2', 5432)

    def _make_data_dir(self):
        os.makedirs(self.data_dir)
        with open(os.path.join(self.data_dir, 'PG_VERSION'), 'w') as f:
            f.write('16\n')

    def test_data_directory_empty(self, mock_query):
        self.assertTrue(self.p.data_directory_empty())
        os.makedirs(self.data_dir)
        open(os.path.join(self.data_dir, '.keep'), 'w').close()
        self.assertTrue(self.p.data_directory_empty())
        open(os.path.join(self.data_dir, 'PG_VERSION'), 'w').close()
        self.assertFalse(self.p.data_directory_empty())
        self.assertFalse(self.p.pg_control_exists())

    def test_conn_kwargs(self, mock_query):
        self.assertEqual(self.p._conn_kwargs, {'host': '/tmp', 'port': 5433, 'dbname': 'postgres',
                                               'user': 'postgres', 'connect_timeout': 2})

    @mock_running
    def test_facts(self, mock_query):
        mock_query.side_effect = [[(50331744,)], [('sync',)]]
        self.assertEqual(self.p.facts(), LocalFacts(True, 50331744, 'sync'))

        mock_query.side_effect = [[(None,)], []]
        self.assertEqual(self.p.facts(), LocalFacts(True, 0, ''))

        mock_query.side_effect = psycopg.OperationalError('connection refused')
        self.assertRaises(PostgresConnectionException, self.p.facts)
        mock_query.side_effect = psycopg.ProgrammingError('function does not exist')
        self.assertRaises(PostgresException, self.p.facts)

    @mock_stopped
    def test_facts_stopped(self, mock_query):
        self.assertEqual(self.p.facts(), LocalFacts.unknown())
        self.assertFalse(self.p.is_streaming())
        mock_query.assert_not_called()

    @mock_running
    def test_is_streaming(self, mock_query):
        mock_query.return_value = [('streaming',)]
        self.assertTrue(self.p.is_streaming())
        mock_query.return_value = [('starting',)]
        self.assertFalse(self.p.is_streaming())
        mock_query.return_value = []
        self.assertFalse(self.p.is_streaming())

    def test_start_stop(self, mock_query):
        with mock_stopped:
            self.assertTrue(self.p.start())
            self.assertTrue(self.p.stop())
        with mock_running:
            self.assertTrue(self.p.start())
            with patch('subprocess.call', Mock(return_value=1)) as mock_call:
                self.assertFalse(self.p.demote())
        self.assertEqual(mock_call.call_args[0][0],
                         ['/usr/lib/postgresql/16/bin/pg_ctl', 'stop', '-D', self.data_dir,
                          '-m', 'fast', '-w', '-t', '30'])

    def test_promote(self, mock_query):
        with mock_stopped:
            self.assertFalse(self.p.promote())

        self._make_data_dir()
        with mock_running, patch('subprocess.call', Mock(return_value=0)) as mock_call:
            mock_query.return_value = [(False,)]
            self.assertTrue(self.p.promote())
            mock_call.assert_not_called()

            mock_query.return_value = [(True,)]
            self.assertTrue(self.p.promote())
            self.assertEqual(mock_call.call_args[0][0][1], 'promote')
        with open(os.path.join(self.data_dir, STANDBY_CONFIG_FILE)) as f:
            self.assertNotIn('primary_conninfo', f.read())

    def test_set_synchronous_replication(self, mock_query):
        mock_query.return_value = [('*',)]
        self.assertTrue(self.p.set_synchronous_replication(True))
        self.assertEqual(mock_query.call_count, 1)

        mock_query.return_value = [('*',)]
        self.assertTrue(self.p.set_synchronous_replication(False))
        self.assertEqual(mock_query.call_count, 4)
        self.assertIn("ALTER SYSTEM SET synchronous_standby_names = ''", mock_query.call_args_list[2][0][1])

    def test_primary_conninfo(self, mock_query):
        self.assertEqual(self.p.primary_conninfo(self.primary),
                         "host=10.0.0.2 port=5432 user=replicator password='rep pass' sslmode=prefer "
                         "application_name=pgautofailover_standby")

    def test_enable_streaming(self, mock_query):
        self._make_data_dir()
        with mock_stopped, patch('subprocess.call', Mock(return_value=0)) as mock_call:
            self.assertTrue(self.p.enable_streaming(self.primary))
            self.assertEqual(mock_call.call_args[0][0][1], 'start')

        self.assertTrue(os.path.exists(os.path.join(self.data_dir, STANDBY_SIGNAL_FILE)))
        with open(os.path.join(self.data_dir, STANDBY_CONFIG_FILE)) as f:
            self.assertIn("primary_conninfo = 'host=10.0.0.2 port=5432", f.read())

        with mock_running, patch('subprocess.call', Mock(return_value=0)) as mock_call:
            self.assertTrue(self.p.enable_streaming(self.primary))
            mock_call.assert_not_called()

            self.assertTrue(self.p.enable_streaming(NodeAddress(3, '10.0.0.3', 5432)))
            self.assertEqual(mock_call.call_args[0][0][1], 'restart')

        with open(os.path.join(self.data_dir, 'postgresql.conf')) as f:
            self.assertEqual(f.read().count("include_if_exists '{0}'".format(STANDBY_CONFIG_FILE)), 1)

    def test_enable_streaming_from_scratch(self, mock_query):
        with mock_stopped, patch('subprocess.call', Mock(return_value=1)) as mock_call:
            self.assertFalse(self.p.enable_streaming(self.primary))
        cmd = mock_call.call_args[0][0]
        self.assertEqual(cmd[0], '/usr/lib/postgresql/16/bin/pg_basebackup')
        self.assertIn('replicator', cmd)
        self.assertEqual(mock_call.call_args[1]['env']['PGPASSWORD'], 'rep pass')

        with mock_stopped, patch.object(Postgresql, 'base_backup', Mock(return_value=True)):
            self.assertRaises(PostgresException, self.p.enable_streaming, self.primary)


class TestPostmasterProcess(BaseTestCase):

    @patch('psutil.Process.create_time')
    @patch('psutil.Process.__init__')
    @patch.object(PostmasterProcess, '_read_postmaster_pidfile')
    def test_from_pidfile(self, mock_read, mock_init, mock_create_time):
        mock_init.side_effect = psutil.NoSuchProcess(123)
        mock_read.return_value = {}
        self.assertIsNone(PostmasterProcess.from_pidfile(''))
        mock_read.return_value = {"pid": "foo"}
        self.assertIsNone(PostmasterProcess.from_pidfile(''))
        mock_read.return_value = {"pid": "123"}
        self.assertIsNone(PostmasterProcess.from_pidfile(''))

        mock_init.side_effect = None
        with patch.object(psutil.Process, 'pid', 123), \
                patch.object(psutil.Process, 'ppid', return_value=124), \
                patch('os.getpid', return_value=125) as mock_ospid, \
                patch('os.getppid', return_value=126):

            self.assertIsNotNone(PostmasterProcess.from_pidfile(''))

            mock_create_time.return_value = 100000
            mock_read.return_value = {"pid": "123", "start_time": "200000"}
            self.assertIsNone(PostmasterProcess.from_pidfile(''))

            mock_read.return_value = {"pid": "123", "start_time": "foobar"}
            self.assertIsNotNone(PostmasterProcess.from_pidfile(''))

            mock_ospid.return_value = 123
            mock_read.return_value = {"pid": "123", "start_time": "100000"}
            self.assertIsNone(PostmasterProcess.from_pidfile(''))

    def test_read_postmaster_pidfile(self):
        self.assertEqual(PostmasterProcess._read_postmaster_pidfile(self.data_dir), {})
        os.makedirs(self.data_dir)
        with open(os.path.join(self.data_dir, 'postmaster.pid'), 'w') as f:
            f.write('4242\n{0}\n1700000000\n5432\n/tmp\n*\n'.format(self.data_dir))
        pidfile = PostmasterProcess._read_postmaster_pidfile(self.data_dir)
        self.assertEqual(pidfile['pid'], '4242')
        self.assertEqual(pidfile['port'], '5432')
