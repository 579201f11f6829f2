from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .core.config import Settings, get_settings

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker[Session]] = None


def _normalize_database_url(url: str) -> str:
    """Ensure SQLAlchemy uses psycopg driver explicitly.

    docker-compose provides postgresql://...; prefer postgresql+psycopg://...
    """
    if url.startswith("postgresql://") and "+" not in url:
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    # ON DELETE SET NULL on webhook deliveries needs this on every connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(settings: Settings) -> Engine:
    database_url = _normalize_database_url(settings.database_url)
    if not database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            future=True,
        )

    options = {"connect_args": {"check_same_thread": False}, "future": True}
    if ":memory:" in database_url:
        # One shared connection, or each checkout would see an empty database
        options["poolclass"] = StaticPool
    engine = create_engine(database_url, **options)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


class Base(DeclarativeBase):
    pass


def get_sessionmaker() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), expire_on_commit=False, future=True)
    return _SessionLocal


def create_schema(engine: Engine) -> None:
    # Import models so they're registered with Base.metadata
    from .models import events, indexer_state, operations, webhooks  # noqa: F401

    Base.metadata.create_all(engine)


def check_database_health(engine: Optional[Engine] = None) -> dict:
    """Round-trip ``SELECT 1``; never raises, the error text goes into ``details``."""
    engine = engine or get_engine()
    try:
        with engine.connect() as connection:
            ok = connection.execute(text("SELECT 1")).scalar() == 1
    except Exception as exc:  # noqa: BLE001
        return {"ok": False, "details": str(exc)}
    return {"ok": ok, "details": "ok" if ok else "unexpected result"}
