import os
from contextlib import contextmanager
from typing import Generator

from loguru import logger
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    create_engine,
    func,
    text,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Create base class for all models
Base = declarative_base()

# One-time runtime schema upgrades for older SQLite DBs.
_schema_checked = False
_engine_instance = None
_engine_url = None

USER_ROLES = ("user", "admin")


class User(Base):
    """Admin CMS account. Catalog rows live in their own tables."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    username = Column(String(191), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default='user')  # user, admin
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Last login metrics (best-effort, never blocks a login)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String(45), nullable=True)
    last_login_ua = Column(String(32), nullable=True)  # truncated sha256 of the User-Agent

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username}, role={self.role})>"


# Database setup functions
def get_database_path() -> str:
    """Get the path to the SQLite database file"""
    from src import config
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    return str(config.DATABASE_PATH)


def create_engine_instance():
    """Create SQLAlchemy engine instance"""
    global _schema_checked, _engine_instance, _engine_url
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        target_url = database_url
    else:
        db_path = get_database_path()
        target_url = f"sqlite:///{db_path}"

    if _engine_instance is not None and _engine_url == target_url:
        return _engine_instance

    if _engine_url != target_url:
        _schema_checked = False

    logger.info(f"Creating database engine: {target_url}")
    connect_args = {"check_same_thread": False} if target_url.startswith("sqlite") else {}
    engine_kwargs = {}
    if target_url in {"sqlite:///:memory:", "sqlite://"}:
        # Keep one shared in-memory DB connection for tests.
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(
        target_url,
        echo=False,
        connect_args=connect_args,
        **engine_kwargs,
    )

    if not _schema_checked:
        try:
            _ensure_sqlite_schema(engine)
        finally:
            _schema_checked = True

    _engine_instance = engine
    _engine_url = target_url

    return engine


def _ensure_sqlite_schema(engine) -> None:
    """
    Add the login metric columns to user tables created before they existed.
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        def table_exists(table: str) -> bool:
            row = conn.execute(
                text("SELECT name FROM sqlite_master WHERE type='table' AND name=:t"),
                {"t": table},
            ).fetchone()
            return row is not None

        def has_column(table: str, column: str) -> bool:
            result = conn.execute(text(f"PRAGMA table_info({table})"))
            cols = [row[1] for row in result.fetchall()]
            return column in cols

        if not table_exists("users"):
            return

        for column, ddl in (
            ("role", "VARCHAR(20) NOT NULL DEFAULT 'user'"),
            ("last_login_at", "DATETIME"),
            ("last_login_ip", "VARCHAR(45)"),
            ("last_login_ua", "VARCHAR(32)"),
        ):
            if not has_column("users", column):
                logger.info(f"DB upgrade: adding users.{column}")
                conn.execute(text(f"ALTER TABLE users ADD COLUMN {column} {ddl}"))

        conn.commit()


def create_session_factory():
    """Create session factory"""
    engine = create_engine_instance()
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_tables():
    """Create all database tables"""
    # Register the security tables on Base.metadata
    from src.catalog_app.models import audit_log, security  # noqa: F401

    engine = create_engine_instance()
    logger.info("Creating database tables...")
    Base.metadata.create_all(engine)
    logger.info("Database tables created successfully")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session (context manager)"""
    SessionLocal = create_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database():
    """Initialize the database with tables and the bootstrap admin."""
    from src import config
    from src.catalog_app.services.user_service import user_service

    logger.info("Initializing database...")

    create_tables()

    with get_session() as session:
        if config.BOOTSTRAP_ADMIN_USERNAME and config.BOOTSTRAP_ADMIN_PASSWORD:
            if not user_service.find_by_username(session, config.BOOTSTRAP_ADMIN_USERNAME):
                user_service.create_user(
                    session,
                    config.BOOTSTRAP_ADMIN_USERNAME,
                    config.BOOTSTRAP_ADMIN_PASSWORD,
                    role="admin",
                )
                logger.warning(
                    f"Bootstrap admin '{config.BOOTSTRAP_ADMIN_USERNAME}' created from "
                    "CATALOG_BOOTSTRAP_ADMIN_* settings. Remove them once the account exists."
                )

        user_service.ensure_admin_exists(session)
        logger.info("Database initialized successfully")
