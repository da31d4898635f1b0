"""Database session configuration."""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from subsync.core.config import settings

# Billing operations hold a connection for a single lookup or upsert, so a
# small pool covers API traffic plus concurrent webhook background tasks.
POOL_SIZE = 10
MAX_OVERFLOW = POOL_SIZE

async_engine = create_async_engine(
    str(settings.SQLALCHEMY_ASYNC_DATABASE_URI),
    pool_size=POOL_SIZE,
    max_overflow=MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=300,  # Recycle connections after 5 minutes
    pool_timeout=30,
    isolation_level="READ COMMITTED",
    connect_args={
        "server_settings": {
            "idle_in_transaction_session_timeout": "60000",
        },
        "command_timeout": 60,
    },
)

AsyncSessionLocal = async_sessionmaker(autocommit=False, autoflush=False, bind=async_engine)
