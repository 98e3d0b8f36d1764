"""
Alembic-Umgebung für das Security-Schema.

DB-URL und Metadata kommen aus app.db, damit Migrationen und
Laufzeit (init_db) dieselbe Datenbank sehen. Für SQLite läuft
ALTER TABLE im Batch-Modus (Tabellen-Kopie).
"""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from app.db import DB_URL, Base

# Modelle registrieren, sonst ist Base.metadata leer
import app.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", DB_URL)

target_metadata = Base.metadata
_IS_SQLITE = DB_URL.startswith("sqlite")


def run_migrations_offline() -> None:
    """SQL-Skript erzeugen statt direkt zu migrieren."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_IS_SQLITE,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=_IS_SQLITE,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
