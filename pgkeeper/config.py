"""Facilities related to pgkeeper configuration."""
import logging
import os

from collections import defaultdict
from copy import deepcopy
from typing import Any, Callable, cast, Dict, List, Optional

import yaml

from . import PGKEEPER_ENV_PREFIX
from .exceptions import ConfigParseError
from .utils import deep_compare, parse_bool, parse_int, patch_config

logger = logging.getLogger(__name__)

STATE_FILE_NAME = 'pgkeeper.state'


def default_state_file(data_dir: str) -> str:
    """Get the default location of the state file of the instance in *data_dir*.

    .. note::
        The state file lives outside of the data directory, so that a standby can be initialized into an empty one.

    :Example:

        >>> os.environ['XDG_DATA_HOME'] = '/home/postgres/.local/share'
        >>> default_state_file('/var/lib/postgresql/data')
        '/home/postgres/.local/share/pgkeeper/var/lib/postgresql/data/pgkeeper.state'
        >>> del os.environ['XDG_DATA_HOME']
    """
    base = os.environ.get('XDG_DATA_HOME') or os.path.join(os.path.expanduser('~'), '.local', 'share')
    return os.path.join(base, 'pgkeeper', os.path.abspath(data_dir).lstrip(os.sep), STATE_FILE_NAME)


def default_validator(conf: Dict[str, Any]) -> List[str]:
    """Check the settings pgkeeper can't work without.

    :param conf: effective configuration to be validated.

    :returns: a list of issues found, empty if the configuration is usable.

    :raises:
        :class:`ConfigParseError`: if *conf* is empty.
    """
    if not conf:
        raise ConfigParseError('Config is empty.')

    errors: List[str] = []

    formation = conf.get('formation')
    if not isinstance(formation, str) or not formation:
        errors.append('formation must be a non-empty string')

    group = conf.get('group')
    if group is not None and (not isinstance(group, int) or isinstance(group, bool) or group < 0):
        errors.append('group must be null or a non-negative integer')

    if not isinstance(conf.get('loop_wait'), int) or conf['loop_wait'] <= 0:
        errors.append('loop_wait must be a positive integer')

    monitor = conf.get('monitor') or {}
    if not monitor.get('disabled') and not monitor.get('pguri'):
        errors.append('monitor.pguri is required unless monitor.disabled is set')
    for name in ('connect_timeout', 'statement_timeout'):
        value = monitor.get(name)
        if not isinstance(value, int) or value <= 0:
            errors.append('monitor.{0} must be a positive integer'.format(name))

    postgresql = conf.get('postgresql') or {}
    if not postgresql.get('data_dir'):
        errors.append('postgresql.data_dir is required')
    port = postgresql.get('port')
    if not isinstance(port, int) or not 0 < port < 65536:
        errors.append('postgresql.port must be an integer between 1 and 65535')
    for name in ('connect_timeout', 'pg_ctl_timeout'):
        value = postgresql.get(name)
        if not isinstance(value, int) or value <= 0:
            errors.append('postgresql.{0} must be a positive integer'.format(name))

    return errors


class Config(object):
    """Handle pgkeeper configuration.

    The effective configuration is built from, in order of precedence:

      * configuration values defined as environment variables, see :meth:`~Config._build_environment_configuration`;
      * the YAML file passed as *configfile*, or the YAML document in :attr:`PGKEEPER_CONFIG_VARIABLE`;
      * ``Config.__DEFAULT_CONFIG``.

    It mimics a few ``dict`` interfaces so that sections can be read with ``config['postgresql']``.

    :cvar PGKEEPER_CONFIG_VARIABLE: name of the environment variable that can be used to load the configuration from.
    :cvar __DEFAULT_CONFIG: default configuration values.
    """

    PGKEEPER_CONFIG_VARIABLE = PGKEEPER_ENV_PREFIX + 'CONFIGURATION'

    __DEFAULT_CONFIG: Dict[str, Any] = {
        'name': None,
        'formation': 'default',
        'group': None,
        'nodename': 'localhost',
        'state_file': None,
        'loop_wait': 5,
        'monitor': {
            'pguri': None,
            'connect_timeout': 5,
            'statement_timeout': 10,
            'disabled': False,
        },
        'postgresql': {
            'data_dir': None,
            'bin_dir': '',
            'host': '/tmp',
            'port': 5432,
            'dbname': 'postgres',
            'username': 'postgres',
            'connect_timeout': 2,
            'pg_ctl_timeout': 60,
            'replication': {
                'username': 'pgautofailover_replicator',
                'password': None,
                'sslmode': 'prefer',
            },
        },
        'log': {
            'level': 'INFO',
            'type': 'plain',
            'format': '%(asctime)s %(levelname)s: %(message)s',
            'dateformat': None,
            'dir': None,
            'file_size': 25000000,
            'file_num': 4,
            'loggers': {},
        },
    }

    def __init__(self, configfile: Optional[str],
                 validator: Optional[Callable[[Dict[str, Any]], List[str]]] = default_validator) -> None:
        """Create a new instance of :class:`Config` and validate the loaded configuration using *validator*.

        :param configfile: path to the pgkeeper configuration file.
        :param validator: function used to validate the effective configuration. It receives a dictionary and returns
            a list of zero or more error messages.

        :raises:
            :class:`ConfigParseError`: if the file can't be parsed, or if any issue is reported by *validator*.
        """
        self.__environment_configuration = self._build_environment_configuration()

        self._config_file = configfile if configfile and os.path.exists(configfile) else None
        if configfile and not self._config_file:
            raise ConfigParseError('Configuration file "{0}" does not exist'.format(configfile))

        if self._config_file:
            self._local_configuration = self._load_config_file()
        else:
            config_env = os.environ.pop(self.PGKEEPER_CONFIG_VARIABLE, None)
            self._local_configuration = self._safe_load(config_env) if config_env else {}
            patch_config(self._local_configuration, self.__environment_configuration)

        self._validator = validator
        self.__effective_configuration = self._build_effective_configuration(self._local_configuration)

    @property
    def config_file(self) -> Optional[str]:
        """Path to pgkeeper configuration file, if any, else ``None``."""
        return self._config_file

    @property
    def local_configuration(self) -> Dict[str, Any]:
        """Deep copy of the configuration loaded from file and environment, without defaults."""
        return deepcopy(dict(self._local_configuration))

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        """Deep copy default configuration."""
        return deepcopy(cls.__DEFAULT_CONFIG)

    @staticmethod
    def _safe_load(content: Any) -> Dict[str, Any]:
        try:
            config = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigParseError('invalid YAML: {0}'.format(e)) from e
        if not isinstance(config, dict):
            raise ConfigParseError('configuration does not contain a mapping')
        return cast(Dict[str, Any], config)

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration file from filesystem and apply values which were set via environment variables.

        :returns: final configuration after merging configuration file and environment variables.
        """
        try:
            with open(cast(str, self._config_file)) as f:
                config = self._safe_load(f)
        except IOError as e:
            raise ConfigParseError('failed to read "{0}": {1}'.format(self._config_file, e)) from e
        patch_config(config, self.__environment_configuration)
        return config

    def reload_local_configuration(self) -> Optional[bool]:
        """Reload configuration values from the configuration file.

        :returns: ``True`` if changes have been detected between current local configuration and the file.
        """
        if self.config_file:
            try:
                configuration = self._load_config_file()
                if not deep_compare(self._local_configuration, configuration):
                    new_configuration = self._build_effective_configuration(configuration)
                    self._local_configuration = configuration
                    self.__effective_configuration = new_configuration
                    return True
                else:
                    logger.info('No local configuration items changed.')
            except ConfigParseError as e:
                logger.error('Failed to reload configuration from %s: %s', self.config_file, e.value)

    @staticmethod
    def _build_environment_configuration() -> Dict[str, Any]:
        """Get local configuration settings that were specified through environment variables.

        .. note::
            Variables are removed from the environment once read, so that they are not passed on to PostgreSQL.

        :returns: dictionary containing the found environment variables and their values, respecting the expected
            structure of pgkeeper configuration.
        """
        ret: Dict[str, Any] = defaultdict(dict)

        def _popenv(name: str) -> Optional[str]:
            return os.environ.pop(PGKEEPER_ENV_PREFIX + name.upper(), None)

        for param in ('name', 'formation', 'nodename', 'state_file'):
            value = _popenv(param)
            if value:
                ret[param] = value

        for param in ('group', 'loop_wait'):
            value = _popenv(param)
            if value:
                ret[param] = parse_int(value)

        def _set_section_values(section: str, params: List[str]) -> None:
            for param in params:
                value = _popenv(section + '_' + param)
                if value:
                    ret[section][param] = value

        _set_section_values('monitor', ['pguri', 'disabled'])
        _set_section_values('postgresql', ['data_dir', 'port', 'bin_dir'])
        _set_section_values('log', ['level', 'dir'])

        if 'data_dir' not in ret['postgresql'] and os.environ.get('PGDATA'):
            ret['postgresql']['data_dir'] = os.environ['PGDATA']

        if 'disabled' in ret['monitor']:
            ret['monitor']['disabled'] = parse_bool(ret['monitor']['disabled'])
        if 'port' in ret['postgresql']:
            ret['postgresql']['port'] = parse_int(ret['postgresql']['port'])

        return {k: v for k, v in ret.items() if v}

    def _build_effective_configuration(self, local_configuration: Dict[str, Any]) -> Dict[str, Any]:
        """Merge *local_configuration* over the defaults, and validate the result.

        :raises:
            :class:`ConfigParseError`: if any issue is reported by the validator.
        """
        config = self.get_default_config()
        for name, value in local_configuration.items():
            if isinstance(value, dict) and isinstance(config.get(name), dict):
                patch_config(config[name], cast(Dict[str, Any], value))
            else:
                config[name] = value

        data_dir = config['postgresql'].get('data_dir')
        if not config.get('state_file') and data_dir:
            config['state_file'] = default_state_file(data_dir)
        if config['monitor'].get('disabled') is None:
            config['monitor']['disabled'] = False

        if self._validator:
            errors = self._validator(config)
            if errors:
                raise ConfigParseError('\n'.join(errors))
        return config

    @property
    def state_file(self) -> str:
        return self['state_file']

    @property
    def monitor_disabled(self) -> bool:
        return bool(self['monitor'].get('disabled'))

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Get effective value of ``key`` setting from pgkeeper configuration root.

        Designed to work the same way as :func:`dict.get`.
        """
        return self.__effective_configuration.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.__effective_configuration

    def __getitem__(self, key: str) -> Any:
        """Get value of setting *key* from effective configuration.

        :raises:
            :class:`KeyError`: if *key* is not present in effective configuration.
        """
        return self.__effective_configuration[key]

    def copy(self) -> Dict[str, Any]:
        """Get a deep copy of effective pgkeeper configuration."""
        return deepcopy(self.__effective_configuration)
