"""
Alembic environment for the ledger and queue schema.

The URL comes from the same resolution the service uses
(``DATABASE_URL`` / ``STUDIO_DATABASE_URL`` / the SQLite file under
``STUDIO_DATA_DIRECTORY``) unless the caller already set one, which is
what ``init_db()`` does at startup. SQLite runs in batch mode so ALTERs
in later revisions are rewritten as table copies.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from app.core.database import resolve_database_url
from app.models.account import ReferralReward, UserAccount  # noqa: F401
from app.models.generation import GenerationJob  # noqa: F401
from app.models.usage import TokenUsage  # noqa: F401

config = context.config

if not config.attributes.get("url_resolved"):
    config.set_main_option("sqlalchemy.url", resolve_database_url())

if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = SQLModel.metadata


def _render_as_batch(url: str) -> bool:
    return url.startswith("sqlite")


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout (``alembic upgrade head --sql``)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=_render_as_batch(url),
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = config.get_main_option("sqlalchemy.url")
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=_render_as_batch(url),
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
