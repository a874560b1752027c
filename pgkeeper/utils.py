"""Utilitary objects and functions that can be used throughout pgkeeper code.

:var logger: logger of this module.
"""
import errno
import logging
import os

from typing import Any, cast, Dict, Optional

logger = logging.getLogger(__name__)


def deep_compare(obj1: Dict[Any, Any], obj2: Dict[Any, Any]) -> bool:
    """Recursively compare two dictionaries to check if they are equal in terms of keys and values.

    .. note::
        Values are compared based on their string representation.

    :param obj1: dictionary to be compared with *obj2*.
    :param obj2: dictionary to be compared with *obj1*.

    :returns: ``True`` if all keys and values match between the two dictionaries.

    :Example:

        >>> deep_compare({'1': None}, {})
        False

        >>> deep_compare({'1': 2}, {'1': '2'})
        True

        >>> deep_compare({'1': {'2': [3, 4]}}, {'1': {'2': [3, 4]}})
        True
    """
    if set(obj1.keys()) != set(obj2.keys()):
        return False

    for key, value in obj1.items():
        if isinstance(value, dict):
            if not (isinstance(obj2[key], dict) and deep_compare(cast(Dict[Any, Any], value), obj2[key])):
                return False
        elif str(value) != str(obj2[key]):
            return False
    return True


def patch_config(config: Dict[Any, Any], data: Dict[Any, Any]) -> bool:
    """Update and append to dictionary *config* from overrides in *data*.

    .. note::

        * If the value of a given key in *data* is ``None``, then the key is removed from *config*;
        * If a key is present in *data* but not in *config*, the key with the corresponding value is added to *config*
        * For keys that are present on both sides it will compare the string representation of the corresponding values,
          if the comparison doesn't match override the value

    :param config: configuration to be patched.
    :param data: new configuration values to patch *config* with.

    :returns: ``True`` if *config* was changed.

    :Example:

        >>> config = {'monitor': {'connect_timeout': 5}, 'group': 0}
        >>> patch_config(config, {'monitor': {'connect_timeout': 2}, 'group': None})
        True
        >>> config
        {'monitor': {'connect_timeout': 2}}
    """
    is_changed = False
    for name, value in data.items():
        if value is None:
            if config.pop(name, None) is not None:
                is_changed = True
        elif name in config:
            if isinstance(value, dict):
                if isinstance(config[name], dict):
                    if patch_config(config[name], cast(Dict[Any, Any], value)):
                        is_changed = True
                else:
                    config[name] = value
                    is_changed = True
            elif str(config[name]) != str(value):
                config[name] = value
                is_changed = True
        else:
            config[name] = value
            is_changed = True
    return is_changed


def parse_bool(value: Any) -> Optional[bool]:
    """Parse a given value to a :class:`bool` object.

    .. note::

        The parsing is case-insensitive, and takes into consideration these values:
            * ``on``, ``true``, ``yes``, and ``1`` as ``True``.
            * ``off``, ``false``, ``no``, and ``0`` as ``False``.

    :param value: value to be parsed to :class:`bool`.

    :returns: the parsed value. If not able to parse, returns ``None``.

    :Example:

        >>> parse_bool(1)
        True

        >>> parse_bool('off')
        False

        >>> parse_bool('foo')
    """
    value = str(value).lower()
    if value in ('on', 'true', 'yes', '1'):
        return True
    if value in ('off', 'false', 'no', '0'):
        return False


def parse_int(value: Any) -> Optional[int]:
    """Parse *value* as an :class:`int`.

    :param value: an integer or a string holding a decimal integer, possibly surrounded by whitespace.

    :returns: the parsed value, if able to parse. Otherwise returns ``None``.

    :Example:

        >>> parse_int(' 5433 ')
        5433

        >>> parse_int(True) is None
        True

        >>> parse_int('nonsense') is None
        True
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def format_lsn(lsn: int) -> str:
    """Convert an integer WAL position to the ``X/Y`` text PostgreSQL uses for ``pg_lsn``.

    :Example:

        >>> format_lsn(50331744)
        '0/3000060'

        >>> format_lsn(0)
        '0/0'
    """
    return '{0:X}/{1:X}'.format(lsn >> 32, lsn & 0xFFFFFFFF)


def fsync_dir(path: str) -> None:
    """Flush the directory entry of *path* to stable storage, so that a rename inside it survives a crash."""
    if os.name != 'nt':
        fd = os.open(path, os.O_DIRECTORY)
        try:
            os.fsync(fd)
        except OSError as e:
            # Some filesystems don't like fsyncing directories and raise EINVAL. Ignoring it is usually safe.
            if e.errno != errno.EINVAL:
                raise
        finally:
            os.close(fd)
