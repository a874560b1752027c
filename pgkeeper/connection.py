"""Short lived connections from pgkeeper to PostgreSQL.

Neither the monitor protocol nor the local probe rely on connection affinity: every call opens a connection, runs a
single statement and closes it again, so a broken connection never outlives the call that noticed it.
"""
import logging

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple, TYPE_CHECKING, Union

if TYPE_CHECKING:  # pragma: no cover
    from psycopg import Cursor
    from psycopg2 import cursor

from . import psycopg

logger = logging.getLogger(__name__)


@contextmanager
def get_connection_cursor(**kwargs: Any) -> Iterator[Union['cursor', 'Cursor[Any]']]:
    """Open a connection with *kwargs* and yield a cursor on it.

    The connection is closed when leaving the context, whether or not an exception was raised.

    :param kwargs: connection parameters passed to :func:`~pgkeeper.psycopg.connect`.

    :yields: a cursor of an ``autocommit`` connection.
    """
    conn = psycopg.connect(**kwargs)
    try:
        with conn.cursor() as cur:
            yield cur
    finally:
        conn.close()


def query(conn_kwargs: Dict[str, Any], sql: str, *params: Any) -> List[Tuple[Any, ...]]:
    """Execute *sql* with *params* on a fresh connection and return all rows.

    :param conn_kwargs: connection parameters.
    :param sql: SQL statement to execute.
    :param params: parameters to pass.

    :returns: a query response as a list of tuples, empty if the statement returned nothing.

    :raises:
        :exc:`~psycopg.Error`: on any driver error, the caller decides how to classify it.
    """
    with get_connection_cursor(**conn_kwargs) as cur:
        logger.debug('query: %s, params: %r', sql, params)
        cur.execute(sql.encode('utf-8'), params or None)
        return cur.fetchall() if cur.description is not None else []
