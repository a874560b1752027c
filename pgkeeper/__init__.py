"""Define general variables and functions for :mod:`pgkeeper`.

:var PGKEEPER_ENV_PREFIX: prefix for pgkeeper related configuration environment variables.
:var MIN_PSYCOPG2: minimum version of :mod:`psycopg2` required by pgkeeper to work.
:var MIN_PSYCOPG3: minimum version of :mod:`psycopg` required by pgkeeper to work.
:var EXTENSION_NAME: name of the PostgreSQL extension installed on the monitor.
:var EXTENSION_VERSION: version of the monitor extension this keeper speaks to.
"""
from typing import Iterator, Tuple

PGKEEPER_ENV_PREFIX = 'PGKEEPER_'
MIN_PSYCOPG2 = (2, 5, 4)
MIN_PSYCOPG3 = (3, 0, 0)
EXTENSION_NAME = 'pgautofailover'
EXTENSION_VERSION = '1.0'


def parse_version(version: str) -> Tuple[int, ...]:
    """Convert *version* from human-readable format to tuple of integers.

    :param version: human-readable software version, e.g. ``2.5.4.dev1 (dt dec pq3 ext lo64)``.

    :returns: tuple of *version* parts, each part as an integer.

    :Example:

        >>> parse_version('2.5.4.dev1 (dt dec pq3 ext lo64)')
        (2, 5, 4)

        >>> parse_version('1.0')
        (1, 0)
    """
    def _parse_version(version: str) -> Iterator[int]:
        for e in version.split('.'):
            try:
                yield int(e)
            except ValueError:
                break
    return tuple(_parse_version(version.split(' ')[0]))
