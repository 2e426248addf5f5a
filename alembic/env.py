from logging.config import fileConfig

from sqlalchemy import create_engine, pool, text

from alembic import context
from teamsync.config.settings import DatabaseSettings
from teamsync.constants import DB_SCHEMA
from teamsync.remote.models import RemoteBase

# Alembic Config object
config = context.config

# Python logging from ini file
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Same DATABASE_* variables (and .env) the service reads; psycopg for sync DDL.
_db = DatabaseSettings()
DATABASE_URL = (
    f"postgresql+psycopg://{_db.user}:{_db.password}@{_db.host}:{_db.port}/{_db.name}"
)

# Shared event/team tables only. The per-client SQLite store (LocalBase) is
# never migrated here: ensure_local_schema() creates it on each device.
target_metadata = RemoteBase.metadata


def include_name(name, type_, parent_names):
    """Restrict autogenerate to the teamsync schema.

    The notify function and trigger live in the migration scripts and in
    ensure_schema(); autogenerate does not track them.
    """
    if type_ == "schema":
        return name == DB_SCHEMA
    return True


def run_migrations_offline() -> None:
    """Emit SQL for the remote schema without a connection."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=DB_SCHEMA,
        include_schemas=True,
        include_name=include_name,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(DATABASE_URL, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # version table lives in the schema, so it must exist first
        connection.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        connection.commit()

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=DB_SCHEMA,
            include_schemas=True,
            include_name=include_name,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
