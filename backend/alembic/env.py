"""Alembic environment script.

Only model metadata and a database URL are needed; the runtime engine module
is not imported. URL precedence:

1. DB_URL
2. DATABASE_URL (TEST_DATABASE_URL when TESTING=true)
3. Value set in alembic.ini
4. Discrete DB_HOST / DB_PORT / DB_USER / DB_PASSWORD / DB_NAME (MySQL)

Async driver URLs (mysql+aiomysql://, postgresql+asyncpg://, sqlite+aiosqlite://)
are converted to their synchronous counterparts for Alembic.
"""
import os
import sys
from logging.config import fileConfig
from urllib.parse import quote_plus

from sqlalchemy import engine_from_config, pool
from alembic import context

# env.py lives in backend/alembic; make the qssun package importable
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from qssun.models.database import Base  # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_SYNC_DRIVERS = {
    'mysql+aiomysql://': 'mysql+pymysql://',
    'mysql://': 'mysql+pymysql://',
    'sqlite+aiosqlite://': 'sqlite://',
    'postgresql+asyncpg://': 'postgresql+psycopg://',
    'postgresql://': 'postgresql+psycopg://',
}


def _resolve_url() -> str:
    if os.getenv('TESTING', 'false').lower() == 'true' and os.getenv('TEST_DATABASE_URL'):
        return os.environ['TEST_DATABASE_URL']
    env_override = os.getenv('DB_URL') or os.getenv('DATABASE_URL')
    if env_override:
        return env_override
    ini_url = config.get_main_option('sqlalchemy.url')
    if ini_url:
        return ini_url
    user = quote_plus(os.getenv('DB_USER', 'root'))
    password = quote_plus(os.getenv('DB_PASSWORD', ''))
    host = os.getenv('DB_HOST', 'localhost')
    port = os.getenv('DB_PORT', '3306')
    name = os.getenv('DB_NAME', 'qssun')
    return f'mysql+pymysql://{user}:{password}@{host}:{port}/{name}?charset=utf8mb4'


def to_sync_url(url: str) -> str:
    for prefix, replacement in _SYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


# '%' must be escaped for ConfigParser interpolation
config.set_main_option('sqlalchemy.url', to_sync_url(_resolve_url()).replace('%', '%%'))


def run_migrations_offline():
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix='sqlalchemy.',
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == 'sqlite',
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
