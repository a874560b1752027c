"""pgkeeper logging facilities.

The keeper runs a single reconciliation flow, so log records go straight from the root logger to one handler: either
``stderr`` or a rotating file, formatted as plain text or as JSON.
"""
import logging
import os

from copy import deepcopy
from logging.handlers import RotatingFileHandler
from typing import Any, cast, Dict, List, Optional, Union

from .utils import deep_compare

type_logformat = Union[List[Union[str, Dict[str, Any], Any]], str, Any]

_LOGGER = logging.getLogger(__name__)


class KeeperFileHandler(RotatingFileHandler):
    """Wrapper of :class:`RotatingFileHandler` that creates the log directory if needed."""

    def __init__(self, filename: str) -> None:
        directory = os.path.dirname(filename)
        if directory:
            os.makedirs(directory, exist_ok=True)
        super(KeeperFileHandler, self).__init__(filename)


def _type(value: Any) -> str:
    return value.__class__.__name__


class KeeperLogger(object):
    """Apply the ``log`` section of the configuration to the root logger.

    :cvar DEFAULT_TYPE: default type of log format (``plain``).
    :cvar DEFAULT_LEVEL: default logging level (``INFO``).
    :cvar DEFAULT_FORMAT: default format of log messages (``%(asctime)s %(levelname)s: %(message)s``).

    :ivar log_handler: log handler that is currently attached to the root logger.
    """

    DEFAULT_TYPE = 'plain'
    DEFAULT_LEVEL = 'INFO'
    DEFAULT_FORMAT = '%(asctime)s %(levelname)s: %(message)s'

    def __init__(self) -> None:
        self._root_logger = logging.getLogger()
        self._config: Optional[Dict[str, Any]] = None
        self.log_handler: Optional[logging.Handler] = None
        self.reload_config({'level': 'DEBUG'})

    def update_loggers(self, config: Dict[str, Any]) -> None:
        """Configure custom loggers' log levels.

        .. note::
            Loggers that are not in *config* inherit the level of their parent again.

        :param config: :class:`dict` object with custom loggers configuration, from ``log.loggers``.

        :Example:

            .. code-block:: python

                update_loggers({'pgkeeper.monitor': 'DEBUG'})
        """
        loggers = deepcopy(config)
        for name, logger in self._root_logger.manager.loggerDict.items():
            if not isinstance(logger, logging.PlaceHolder):
                level = loggers.pop(name, logging.NOTSET)
                logger.setLevel(level)

        for name, level in loggers.items():
            logger = self._root_logger.manager.getLogger(name)
            logger.setLevel(level)

    def _get_plain_formatter(self, logformat: type_logformat, dateformat: Optional[str]) -> logging.Formatter:
        """Returns a logging formatter with the specified format and date format.

        .. note::
            If the log format isn't a string, prints a warning message and uses the default log format instead.
        """
        if not isinstance(logformat, str):
            _LOGGER.warning('Expected log format to be a string when log type is plain, but got "%s"', _type(logformat))
            logformat = KeeperLogger.DEFAULT_FORMAT

        return logging.Formatter(logformat, dateformat)

    def _get_json_formatter(self, logformat: type_logformat, dateformat: Optional[str],
                            static_fields: Dict[str, Any]) -> logging.Formatter:
        """Returns a logging formatter that outputs JSON formatted messages.

        .. note::
            If :mod:`pythonjsonlogger` library is not installed, prints an error message and returns
            a plain log formatter instead.

        :param logformat: Specifies the log fields and their key names in the JSON log message. Either a format string,
            or a list of field names where each item may also be a ``{field: renamed_field}`` mapping.
        :param dateformat: The format of the timestamp in the log messages.
        :param static_fields: A dictionary of static fields that are added to every log message.
        """
        rename_fields: Dict[str, str] = {}
        if isinstance(logformat, str):
            jsonformat = logformat
        elif isinstance(logformat, list):
            log_fields: List[str] = []
            for field in cast(List[Any], logformat):
                if isinstance(field, str):
                    log_fields.append(field)
                elif isinstance(field, dict):
                    for original_field, renamed_field in cast(Dict[str, Any], field).items():
                        if isinstance(renamed_field, str):
                            log_fields.append(original_field)
                            rename_fields[original_field] = renamed_field
                        else:
                            _LOGGER.warning('Expected renamed log field to be a string, but got "%s"',
                                            _type(renamed_field))
                else:
                    _LOGGER.warning('Expected each item of log format to be a string or dictionary, but got "%s"',
                                    _type(field))
            jsonformat = ' '.join('%({0})s'.format(f) for f in log_fields) or KeeperLogger.DEFAULT_FORMAT
        else:
            jsonformat = KeeperLogger.DEFAULT_FORMAT
            _LOGGER.warning('Expected log format to be a string or a list, but got "%s"', _type(logformat))

        try:
            try:
                from pythonjsonlogger import json as jsonlogger  # pyright: ignore
            except ImportError:  # pragma: no cover
                from pythonjsonlogger import jsonlogger

            return jsonlogger.JsonFormatter(  # pyright: ignore [reportPrivateImportUsage]
                jsonformat,
                dateformat,
                rename_fields=rename_fields,
                static_fields=static_fields
            )
        except ImportError as e:
            _LOGGER.error('Failed to import "python-json-logger" library: %r. Falling back to the plain logger', e)
        except Exception as e:
            _LOGGER.error('Failed to initialize JsonFormatter: %r. Falling back to the plain logger', e)

        return self._get_plain_formatter(jsonformat, dateformat)

    def _get_formatter(self, config: Dict[str, Any]) -> logging.Formatter:
        logtype = config.get('type', KeeperLogger.DEFAULT_TYPE)
        logformat: type_logformat = config.get('format', KeeperLogger.DEFAULT_FORMAT)
        dateformat = config.get('dateformat') or None
        static_fields = config.get('static_fields', {})

        if dateformat is not None and not isinstance(dateformat, str):
            _LOGGER.warning('Expected log dateformat to be a string, but got "%s"', _type(dateformat))
            dateformat = None

        if logtype == 'json':
            return self._get_json_formatter(logformat, dateformat, static_fields)
        return self._get_plain_formatter(logformat, dateformat)

    def reload_config(self, config: Dict[str, Any]) -> None:
        """Apply log related configuration.

        .. note::
            It is also able to deal with runtime configuration changes, switching between file and ``stderr``
            handlers as needed.

        :param config: ``log`` section from pgkeeper configuration.
        """
        if self._config is not None and deep_compare(self._config, config):
            return

        self._root_logger.setLevel(config.get('level', KeeperLogger.DEFAULT_LEVEL))

        handler = self.log_handler
        if config.get('dir'):
            if not isinstance(handler, KeeperFileHandler):
                handler = KeeperFileHandler(os.path.join(config['dir'], 'pgkeeper.log'))
            handler.maxBytes = int(config.get('file_size', 25000000))
            handler.backupCount = int(config.get('file_num', 4))
        # RotatingFileHandler is a StreamHandler too
        elif handler is None or isinstance(handler, KeeperFileHandler):
            handler = logging.StreamHandler()

        handler.setFormatter(self._get_formatter(config))

        if handler is not self.log_handler:
            if self.log_handler:
                self._root_logger.removeHandler(self.log_handler)
                self.log_handler.close()
            self._root_logger.addHandler(handler)
            self.log_handler = handler

        self._config = deepcopy(config)
        self.update_loggers(config.get('loggers') or {})

    def shutdown(self) -> None:
        if self.log_handler:
            self._root_logger.removeHandler(self.log_handler)
            self.log_handler.close()
            self.log_handler = None
