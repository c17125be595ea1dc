"""Utility script to run Alembic migrations programmatically before app start (optional).

Usage:
    python run_migrations.py

This can be invoked in container entrypoint before launching uvicorn.
"""
import logging
import os

from alembic.config import Config
from alembic import command
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import SQLAlchemyError

BASE_DIR = os.path.dirname(__file__)
ALEMBIC_INI = os.path.join(BASE_DIR, 'alembic.ini')
# Schema that predates migrations (users, quotations, custody sheets, notifications)
BASELINE_REVISION = '20251019_0001'

logger = logging.getLogger("qssun.migrations")


def run():
    cfg = Config(ALEMBIC_INI)
    override = os.getenv('DB_URL') or os.getenv('DATABASE_URL')
    if override:
        cfg.set_main_option('sqlalchemy.url', override.replace('%', '%%'))

    # Auto-stamp baseline if tables already exist (legacy bootstrapped schema).
    # The URL is only known to env.py when taken from DB_* variables, so the
    # check is skipped then.
    url = cfg.get_main_option('sqlalchemy.url')
    if url:
        url = url.replace('mysql+aiomysql://', 'mysql+pymysql://', 1)
        url = url.replace('sqlite+aiosqlite://', 'sqlite://', 1)
        url = url.replace('postgresql+asyncpg://', 'postgresql+psycopg://', 1)
        if url.startswith('mysql://'):
            url = url.replace('mysql://', 'mysql+pymysql://', 1)
        elif url.startswith('postgresql://'):
            url = url.replace('postgresql://', 'postgresql+psycopg://', 1)
        try:
            engine = create_engine(url)
            existing_tables = set(inspect(engine).get_table_names())
            engine.dispose()
            if 'alembic_version' not in existing_tables:
                sentinel_tables = {'users', 'quotations', 'instant_expense_sheets', 'notifications'}
                if existing_tables & sentinel_tables:
                    logger.warning(
                        "Existing tables detected without alembic_version. Stamping baseline %s.",
                        BASELINE_REVISION)
                    command.stamp(cfg, BASELINE_REVISION)
        except SQLAlchemyError as e:
            logger.warning("Baseline detection failed: %s", e)

    command.upgrade(cfg, 'head')


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    run()
