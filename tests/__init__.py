import os
import shutil
import tempfile
import unittest

import yaml

from pgkeeper.config import Config
from pgkeeper.keeper import Keeper
from pgkeeper.postgresql import AbstractPostgresql
from pgkeeper.state import create_state_file, KeeperState, NodeState, read_state
from pgkeeper.utils import patch_config

MONITOR_PGURI = 'postgres://autoctl_node@monitor:5432/pg_auto_failover'


class FakePostgresql(AbstractPostgresql):
    """A local instance that lives in memory and records every effectful call."""

    def __init__(self, running=False, lsn=0, sync_state='', streaming=False, empty=False, failing=()):
        self.running = running
        self.lsn = lsn
        self.sync_state = sync_state
        self.streaming = streaming
        self.empty = empty
        self.failing = set(failing)
        self.sync_rep = False
        self.primary = None
        self.calls = []

    def _record(self, name):
        self.calls.append(name)
        return name not in self.failing

    def data_directory_empty(self):
        return self.empty

    def is_running(self):
        return self.running

    def current_write_position(self):
        return self.lsn

    def replication_sync_state(self):
        return self.sync_state

    def start(self):
        if not self._record('start'):
            return False
        self.running = True
        return True

    def stop(self):
        if not self._record('stop'):
            return False
        self.running = False
        return True

    def demote(self):
        if not self._record('demote'):
            return False
        self.running = False
        return True

    def promote(self):
        return self._record('promote') and self.running

    def enable_streaming(self, primary):
        if not self._record('enable_streaming'):
            return False
        self.primary = primary
        self.running = True
        return True

    def set_synchronous_replication(self, enabled):
        if not self._record('set_synchronous_replication'):
            return False
        self.sync_rep = enabled
        return True

    def is_streaming(self):
        return self.running and self.streaming


class BaseTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.data_dir = os.path.join(self.tmpdir, 'data')
        self.state_file = os.path.join(self.tmpdir, 'state', 'pgkeeper.state')
        self.config_file = os.path.join(self.tmpdir, 'pgkeeper.yml')

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def write_config(self, **overrides):
        config = {
            'formation': 'default',
            'nodename': '10.0.0.1',
            'state_file': self.state_file,
            'monitor': {'pguri': MONITOR_PGURI},
            'postgresql': {'data_dir': self.data_dir, 'port': 5432},
        }
        patch_config(config, overrides)
        with open(self.config_file, 'w') as f:
            yaml.safe_dump(config, f)
        return self.config_file

    def get_config(self, **overrides):
        return Config(self.write_config(**overrides))

    def get_keeper(self, current=NodeState.INIT_STATE, assigned=None, postgresql=None, monitor=None, **overrides):
        config = self.get_config(**overrides)
        state = create_state_file(config.state_file, state=KeeperState(current, assigned or current, 1, 0))
        return Keeper(config, state, postgresql or FakePostgresql(), monitor)

    def read_stored(self):
        return read_state(self.state_file)
