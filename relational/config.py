import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import psycopg2
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from relational.errors import ConnectionFailure

# Load environment variables from a .env file if it exists
load_dotenv()

ENV_PREFIX = "TMD_DATABASE"

# database TYPE -> SQLAlchemy dialect URL; the DSN is handed to the driver as is
DIALECTS = {
    "postgres": "postgresql+psycopg2://",
}

REQUIRED_PARAMETERS = ("TYPE", "HOST", "NAME", "USER")
DEFAULT_PORT = 5432
DEFAULT_SSL_MODE = "disable"


def get_int_env(var_name, default_value):
    """Safely get an integer environment variable."""
    try:
        return int(os.getenv(var_name, str(default_value)))
    except ValueError:
        return default_value


def get_bool_env(var_name, default_value):
    """Safely get a boolean environment variable."""
    value = os.getenv(var_name, str(default_value)).lower()
    return value in ('true', '1', 'yes', 'on')


def environment_key(connection_name: str, parameter: str) -> str:
    """``TMD_DATABASE_<CONNECTION>_<PARAMETER>``, connection name upper-cased."""
    return f"{ENV_PREFIX}_{connection_name.strip().upper()}_{parameter}"


def engine_options() -> Dict[str, Any]:
    return {
        "pool_pre_ping": get_bool_env("RELATIONAL_POOL_PRE_PING", True),
        "pool_recycle": get_int_env("RELATIONAL_POOL_RECYCLE", 300),
    }


@dataclass(frozen=True)
class ConnectionSettings:
    """Connection profile for one named connection."""

    name: str
    database_type: str
    host: str
    database_name: str
    user: str
    port: int = DEFAULT_PORT
    ssl_mode: str = DEFAULT_SSL_MODE
    password: str = ""
    connect_timeout: Optional[int] = None

    @classmethod
    def from_environment(
        cls,
        connection_name: str,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ConnectionSettings":
        """
        Read the profile of ``connection_name`` from the environment.

        Raises :class:`ConnectionFailure` when a required key is missing or a
        numeric key does not parse.
        """
        env = os.environ if environ is None else environ

        def parameter(name: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(environment_key(connection_name, name))
            if value is None or value.strip() == "":
                return default
            return value.strip()

        def int_parameter(name: str, default: Optional[int]) -> Optional[int]:
            raw = parameter(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConnectionFailure(
                    connection_name,
                    f"{environment_key(connection_name, name)} is not an integer: {raw!r}",
                ) from None

        missing = [environment_key(connection_name, key) for key in REQUIRED_PARAMETERS if parameter(key) is None]
        if missing:
            raise ConnectionFailure(connection_name, f"missing environment variables: {', '.join(missing)}")

        return cls(
            name=connection_name,
            database_type=parameter("TYPE").lower(),
            host=parameter("HOST"),
            port=int_parameter("PORT", DEFAULT_PORT),
            ssl_mode=parameter("SSL_MODE", DEFAULT_SSL_MODE),
            database_name=parameter("NAME"),
            user=parameter("USER"),
            password=parameter("PASSWORD", ""),
            connect_timeout=int_parameter("CONNECT_TIMEOUT", None),
        )

    def _dsn(self, password: str) -> str:
        dsn = (
            f"host={self.host} port={self.port} sslmode={self.ssl_mode} "
            f"dbname={self.database_name} user={self.user} password={password}"
        )
        if self.connect_timeout is not None:
            dsn = f"{dsn} connect_timeout={self.connect_timeout}"
        return dsn

    @property
    def dsn(self) -> str:
        return self._dsn(self.password)

    @property
    def redacted_dsn(self) -> str:
        return self._dsn("***REDACTED***" if self.password else "")

    def create_engine(self, **options: Any) -> Engine:
        """
        Build the SQLAlchemy engine for this profile without connecting.

        The driver receives :attr:`dsn` as its single connection argument;
        the URL only selects the dialect.
        """
        driver_url = DIALECTS.get(self.database_type)
        if driver_url is None:
            raise ConnectionFailure(self.name, f'unsupported database type "{self.database_type}"')

        merged = engine_options()
        merged.update(options)
        merged.pop("connect_args", None)
        dsn = self.dsn
        return create_engine(driver_url, creator=lambda: psycopg2.connect(dsn), **merged)


class Config:
    """Flask-facing settings for the ``Relational`` extension."""

    RELATIONAL_CONNECTION_NAME = os.getenv("RELATIONAL_CONNECTION_NAME", "DEFAULT")

    # Logging
    RELATIONAL_LOG_LEVEL = os.getenv("RELATIONAL_LOG_LEVEL", "INFO")
    RELATIONAL_LOG_DIR = os.getenv("RELATIONAL_LOG_DIR")
    RELATIONAL_LOG_JSON = get_bool_env("RELATIONAL_LOG_JSON", False)
    RELATIONAL_LOG_CONSOLE = get_bool_env("RELATIONAL_LOG_CONSOLE", True)
    RELATIONAL_LOG_BACKUP_COUNT = get_int_env("RELATIONAL_LOG_BACKUP_COUNT", 7)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    RELATIONAL_CONNECTION_NAME = os.getenv("TEST_RELATIONAL_CONNECTION_NAME", "TEST")
    RELATIONAL_LOG_LEVEL = "DEBUG"
    RELATIONAL_LOG_DIR = None
    RELATIONAL_LOG_CONSOLE = False


# Configuration dictionary for easy access
config = {
    'testing': TestingConfig,
    'default': Config,
}
