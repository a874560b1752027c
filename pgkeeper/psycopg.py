"""Abstraction layer for :mod:`psycopg` module.

pgkeeper talks to two databases: the local PostgreSQL instance it manages, and the monitor. Both are reached through
this module, which is able to handle both :mod:`pyscopg2` and :mod:`psycopg` and exposes a common interface for them.
:mod:`psycopg2` takes precedence. :mod:`psycopg` will only be used if :mod:`psycopg2` is either absent or older than
``2.5.4``.
"""
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:  # pragma: no cover
    from psycopg import Connection
    from psycopg2 import connection, cursor

__all__ = ['connect', 'parse_conninfo', 'quote_ident', 'quote_literal',
           'DatabaseError', 'Error', 'OperationalError', 'ProgrammingError']

try:
    from psycopg2 import __version__

    from . import MIN_PSYCOPG2, parse_version
    if parse_version(__version__) < MIN_PSYCOPG2:
        raise ImportError
    from psycopg2 import connect as _connect, DatabaseError, Error, OperationalError, ProgrammingError
    from psycopg2.extensions import adapt, parse_dsn, quote_ident as _quote_ident

    def _parse_conninfo(conninfo: str) -> Dict[str, str]:
        """Wraps :func:`parse_dsn` function."""
        return parse_dsn(conninfo)

    def quote_literal(value: Any, conn: Optional[Any] = None) -> str:
        """Quote *value* as a SQL literal.

        :param value: value to be quoted.
        :param conn: if a connection is given then :func:`quote_literal` checks if any special handling based on server
            parameters needs to be applied to *value* before quoting it as a SQL literal.

        :returns: *value* quoted as a SQL literal.
        """
        value = adapt(value)
        if conn:
            value.prepare(conn)
        return value.getquoted().decode('utf-8')
except ImportError:
    from psycopg import DatabaseError, Error, OperationalError, ProgrammingError, sql
    # isort: off
    from psycopg import connect as _connect  # pyright: ignore [reportUnknownVariableType]
    from psycopg.conninfo import conninfo_to_dict as _parse_conninfo

    def _quote_ident(value: Any, scope: Any) -> str:
        """Quote *value* as a SQL identifier.

        :param value: value to be quoted.
        :param scope: connection to evaluate the returning string into.

        :returns: *value* quoted as a SQL identifier.
        """
        return sql.Identifier(value).as_string(scope)

    def quote_literal(value: Any, conn: Optional[Any] = None) -> str:
        """Quote *value* as a SQL literal.

        :param value: value to be quoted.
        :param conn: connection to evaluate the returning string into.

        :returns: *value* quoted as a SQL literal.
        """
        return sql.Literal(value).as_string(conn)


def connect(*args: Any, **kwargs: Any) -> Union['connection', 'Connection[Any]']:
    """Get a connection to the database.

    .. note::
        The connection will have ``autocommit`` enabled: every statement pgkeeper sends is a single call to a function
        of the monitor or a read of the local instance state, nothing needs a wider transaction.

        An ``application_name`` of ``pgkeeper`` is set unless given by the caller, so that keeper sessions are easy to
        spot in ``pg_stat_activity``.

    :param args: positional arguments to call :func:`~psycopg.connect` function from :mod:`psycopg` module.
    :param kwargs: keyword arguments to call :func:`~psycopg.connect` function from :mod:`psycopg` module.

    :returns: a connection to the database. Can be either a :class:`psycopg.Connection` if using :mod:`psycopg`, or a
        :class:`psycopg2.extensions.connection` if using :mod:`psycopg2`.
    """
    if kwargs:
        kwargs.setdefault('application_name', 'pgkeeper')
    ret = _connect(*args, **kwargs)
    ret.autocommit = True
    return ret


def quote_ident(value: Any, conn: Optional[Union['cursor', 'connection', 'Connection[Any]']] = None) -> str:
    """Quote *value* as a SQL identifier.

    :param value: value to be quoted.
    :param conn: connection to evaluate the returning string into.

    :returns: *value* quoted as a SQL identifier.

    :Example:

        >>> quote_ident('pgautofailover')
        '"pgautofailover"'
    """
    if conn is None:
        return '"{0}"'.format(value.replace('"', '""'))
    return _quote_ident(value, conn)


def parse_conninfo(value: str, fallback: Callable[[str], Optional[Dict[str, str]]]) -> Optional[Dict[str, str]]:
    """Parse connection string.

    :param value: value to parse, either a ``postgres://`` URI or a ``key=value`` connection string.
    :param fallback: a function to use if the driver fails to parse *value*.

    :returns: a :class:`dict` object, or ``None`` if failed to parse.
    """
    try:
        ret = _parse_conninfo(value)
    except Exception:
        ret = None
    return ret or fallback(value)
