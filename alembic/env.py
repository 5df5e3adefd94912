"""
Alembic migration environment for the route engine.

The routes schema lives in the platform's shared PostgreSQL database, so
autogenerate only ever compares the tables declared on ``Base.metadata``;
tables owned by other services are invisible to it.
"""
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from route_engine.core.config import get_settings  # noqa: E402
from route_engine.db.database import Base  # noqa: E402
import route_engine.models  # noqa: E402, F401

target_metadata = Base.metadata
OWNED_TABLES = frozenset(target_metadata.tables)


def resolve_url() -> str:
    """``-x db_url=...`` beats alembic.ini, which beats ``DATABASE_URL_SYNC``."""
    cmd_line_url = context.get_x_argument(as_dictionary=True).get("db_url")
    return (
        cmd_line_url
        or config.get_main_option("sqlalchemy.url")
        or get_settings().database_url_sync
    )


def include_object(object, name, type_, reflected, compare_to):
    """Skip reflected tables (and their indexes) this service does not own."""
    if type_ == "table":
        return name in OWNED_TABLES
    table = getattr(object, "table", None)
    if reflected and table is not None:
        return table.name in OWNED_TABLES
    return True


def configure_kwargs() -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "include_object": include_object,
    }


def run_migrations_offline() -> None:
    """Emit SQL for the routes schema without a connection."""
    context.configure(
        url=resolve_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **configure_kwargs(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Migrate over a sync (psycopg2) connection."""
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = resolve_url()
    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, **configure_kwargs())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
