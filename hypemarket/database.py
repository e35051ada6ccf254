from sqlalchemy import Enum as SQLEnum
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from hypemarket.config import settings
import ssl
from urllib.parse import urlparse, urlunparse
from hypemarket.utils.logger import logger

database_url = settings.DATABASE_URL

if not database_url or not database_url.strip():
    raise ValueError("DATABASE_URL environment variable is not set or is empty.")

if not database_url.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
    raise ValueError(
        "Invalid DATABASE_URL format. Must start with 'postgresql://', 'postgresql+asyncpg://' "
        f"or 'sqlite+aiosqlite://'. Got: {database_url[:50]}..."
    )

if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

is_sqlite = database_url.startswith("sqlite")

logger.info(f"Using DATABASE_URL: {database_url.split('@')[1] if '@' in database_url else database_url.split('://')[0]}")

connect_args = {}

if not is_sqlite:
    # asyncpg doesn't understand sslmode & co in the URL, SSL goes through connect_args
    if "?" in database_url:
        logger.warning("Removed query parameters from DATABASE_URL")
    parsed = urlparse(database_url.split("?")[0])
    database_url = urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, "", parsed.fragment))

    connect_args = {
        "server_settings": {
            "application_name": "hypemarket"
        },
        "command_timeout": 60,
        "timeout": 90,
        "statement_cache_size": 0,  # pgbouncer transaction mode
    }

    if "pooler" in database_url.lower():
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context
        logger.info(f"SSL enabled (no cert verification) for database connection to: {parsed.netloc}")

engine = create_async_engine(
    database_url,
    echo=settings.APP_DEBUG,
    poolclass=NullPool,
    connect_args=connect_args,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

Base = declarative_base()


def enum_type(enum_cls):
    """Store a str Enum by value in a plain VARCHAR column."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
