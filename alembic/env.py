from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context
from genbuilder.core.config import settings
from genbuilder.db.session import Base
from genbuilder.db import models  # noqa

config = context.config
# alembic.ini carries no logging sections; the service configures logging itself
if config.config_file_name:
    try:
        fileConfig(config.config_file_name)
    except (KeyError, ValueError):
        pass
target_metadata = Base.metadata

def _database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or settings.database_url

def _batch_mode(url: str) -> bool:
    # SQLite cannot ALTER most column properties in place
    return url.startswith("sqlite")

def run_migrations_offline():
    url = _database_url()
    context.configure(
        url=url, target_metadata=target_metadata, literal_binds=True, render_as_batch=_batch_mode(url)
    )
    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online():
    url = _database_url()
    connectable = engine_from_config({"sqlalchemy.url": url}, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=_batch_mode(url))
        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
