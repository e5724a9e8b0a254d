import logging
from logging.config import fileConfig

from alembic import context

from config import get_settings
from database import Base, make_engine
import models  # noqa: F401  registers the tables on Base.metadata

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

logger = logging.getLogger("alembic.env")


def run_migrations(database_url: str) -> None:
    options = {
        "target_metadata": Base.metadata,
        # SQLite cannot ALTER most constraints in place
        "render_as_batch": database_url.startswith("sqlite"),
    }
    if context.is_offline_mode():
        context.configure(url=database_url, literal_binds=True, **options)
        with context.begin_transaction():
            context.run_migrations()
        return

    engine = make_engine(database_url)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **options)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()
    logger.info(f"migrations_applied: url={database_url}")


run_migrations(
    context.config.get_main_option("sqlalchemy.url") or get_settings().database_url
)
