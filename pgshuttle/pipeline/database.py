"""
Command builders for the PostgreSQL client tools.

Connection parameters become separate arguments and the password is handed
over through PGPASSWORD, so nothing is ever interpolated into a shell string.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$]*$')


@dataclass(frozen=True)
class DatabaseTarget:
    """Connection parameters for one PostgreSQL database."""

    host: Optional[str]
    port: Optional[int]
    username: Optional[str]
    password: Optional[str]
    database: str
    connect_timeout: int = 30

    @classmethod
    def from_url(cls, url: str, connect_timeout: int = 30) -> 'DatabaseTarget':
        """
        Parse a postgresql:// URL.

        Raises:
            ValueError: If the URL cannot be parsed or names no database
        """
        try:
            parsed = make_url(url)
        except ArgumentError as e:
            raise ValueError(f"Invalid database URL: {e}") from e

        if not parsed.drivername.startswith('postgres'):
            raise ValueError(f"Unsupported database driver: {parsed.drivername}")
        if not parsed.database:
            raise ValueError("Database URL must include a database name")

        return cls(
            host=parsed.host,
            port=parsed.port,
            username=parsed.username,
            password=parsed.password,
            database=parsed.database,
            connect_timeout=connect_timeout
        )

    def connection_args(self) -> List[str]:
        args = []
        if self.host:
            args += ['--host', self.host]
        if self.port:
            args += ['--port', str(self.port)]
        if self.username:
            args += ['--username', self.username]
        return args

    def environment(self) -> Dict[str, str]:
        """Environment for the client tools, including the password."""
        env = {'PGCONNECT_TIMEOUT': str(self.connect_timeout)}
        if self.password:
            env['PGPASSWORD'] = self.password
        return env

    def describe(self) -> str:
        """Password-free description for log messages."""
        host = self.host or 'localhost'
        port = f":{self.port}" if self.port else ''
        return f"{self.database}@{host}{port}"


def _quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid schema name: {name!r}")
    return f'"{name}"'


def connection_test_command(target: DatabaseTarget) -> List[str]:
    return [
        'psql', *target.connection_args(),
        '--dbname', target.database,
        '--no-password',
        '--set', 'ON_ERROR_STOP=1',
        '--command', 'SELECT 1;'
    ]


def reset_schema_command(target: DatabaseTarget, schema: str = 'public') -> List[str]:
    """Drop and recreate ``schema``. Irreversible once it succeeds."""
    quoted = _quote_identifier(schema)
    return [
        'psql', *target.connection_args(),
        '--dbname', target.database,
        '--no-password',
        '--set', 'ON_ERROR_STOP=1',
        '--command', f'DROP SCHEMA IF EXISTS {quoted} CASCADE; CREATE SCHEMA {quoted};'
    ]


def restore_command(target: DatabaseTarget, dump_path: str) -> List[str]:
    return [
        'pg_restore', *target.connection_args(),
        '--dbname', target.database,
        '--no-password',
        '--verbose',
        '--no-owner',
        dump_path
    ]


def dump_command(source: DatabaseTarget, output_path: str) -> List[str]:
    """Custom-format dump, the format pg_restore expects."""
    return [
        'pg_dump', *source.connection_args(),
        '--dbname', source.database,
        '--no-password',
        '--format', 'custom',
        '--verbose',
        '--file', output_path
    ]
