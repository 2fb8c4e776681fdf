from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

# Load .env file
load_dotenv()

from slotwatch.config import get_settings  # noqa: E402
from slotwatch.database import normalize_url  # noqa: E402
from slotwatch.tables import metadata  # noqa: E402

# Alembic Config object
config = context.config

database_url = normalize_url(get_settings().POSTGRES_URI)

# Force psycopg2 (synchronous) driver for migrations
if "+asyncpg" in database_url:
    database_url = database_url.replace("+asyncpg", "+psycopg2")
elif database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+psycopg2://", 1)

# Debug: Print URL without credentials
if "@" in database_url:
    url_for_display = f"{database_url.split('://')[0]}://***@{database_url.split('@')[1]}"
else:
    url_for_display = database_url
print(f"[Alembic] DATABASE_URL: {url_for_display}")

config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

# Set up logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section)
    if not configuration:
        raise Exception("No config section for Alembic")
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


# Entry point
if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
