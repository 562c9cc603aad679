"""
Database connection and session management for Couture Tracker.

This module provides:
- Database engine creation and configuration
- Session factory for database operations
- Database initialization (create tables)
- WAL mode configuration
- Foreign key enforcement
- Per-order-item serialization of workflow mutations
- Post-commit publication of queued notifications
- Undo of collaborator side effects when a transaction rolls back
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from ..utils.config import get_config
from ..utils.constants import ROSTER_PRODUCTION_HEADS
from ..models.base import Base

logger = logging.getLogger(__name__)

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


class _KeyedLockEntry:
    """A re-entrant lock plus the number of threads holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


# Keyed locks serializing mutations per order item / order / roster.
# An entry only exists while some thread holds or waits for it.
_locks_guard = threading.Lock()
_keyed_locks: Dict[Tuple[str, Any], _KeyedLockEntry] = {}

_NOTIFICATION_QUEUE_KEY = "pending_notifications"
_ROLLBACK_ACTIONS_KEY = "rollback_actions"


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """
    Set SQLite pragmas on connection.

    Enables foreign key constraints and sets WAL mode. Non-SQLite drivers are
    left untouched.
    """
    if "sqlite" not in type(dbapi_connection).__module__:
        return

    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_database_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create and configure the database engine.

    Args:
        database_url: Optional database URL. If None, uses config default.
        echo: If True, log all SQL statements (useful for debugging)

    Returns:
        Configured SQLAlchemy Engine
    """
    config = get_config()
    if database_url is None:
        database_url = config.database_url

    logger.info(f"Creating database engine: {database_url}")

    if ":memory:" in database_url or "mode=memory" in database_url:
        # For in-memory databases (testing), use StaticPool
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        config.ensure_directories()
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": config.db_timeout},
        )
    else:
        engine = create_engine(database_url, echo=echo, pool_pre_ping=True)

    return engine


def _import_models() -> None:
    """Import all models so they are registered with Base.metadata."""
    from ..models import (  # noqa: F401
        order,
        order_item,
        packet,
        production_task,
        round_robin,
        sales_request,
        section_state,
    )


def init_database(engine: Optional[Engine] = None) -> None:
    """
    Initialize the database by creating all tables.

    Safe to call multiple times - existing tables won't be recreated.

    Args:
        engine: Optional engine to use. If None, uses global engine.
    """
    if engine is None:
        engine = get_engine()

    logger.info("Initializing database tables")
    _import_models()
    Base.metadata.create_all(engine)
    _seed_round_robin_cursor(engine)
    logger.info("Database tables initialized successfully")


def _seed_round_robin_cursor(engine: Engine) -> None:
    """Create the production head cursor row so assignments never race to insert it."""
    from ..models.round_robin import RoundRobinCursor

    session = sessionmaker(bind=engine)()
    try:
        exists = (
            session.query(RoundRobinCursor.id)
            .filter(RoundRobinCursor.key == ROSTER_PRODUCTION_HEADS)
            .first()
        )
        if exists is None:
            session.add(RoundRobinCursor(key=ROSTER_PRODUCTION_HEADS, last_assigned_index=-1))
            session.commit()
    finally:
        session.close()


def get_engine(force_recreate: bool = False) -> Engine:
    """
    Get the global database engine.

    Args:
        force_recreate: If True, recreate the engine even if one exists

    Returns:
        Database engine
    """
    global _engine

    if _engine is None or force_recreate:
        _engine = create_database_engine()

    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get the global session factory.

    Returns:
        Session factory (sessionmaker)
    """
    global _SessionFactory

    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)

    return _SessionFactory


def get_session() -> Session:
    """
    Create a new database session.

    Returns:
        New Session instance
    """
    session_factory = get_session_factory()
    return session_factory()


@contextmanager
def session_scope():
    """
    Provide a transactional scope for database operations.

    This context manager handles session lifecycle automatically:
    - Creates a new session
    - Commits on success
    - Rolls back on exception
    - Always closes the session

    Yields:
        Database session

    Example:
        with session_scope() as session:
            packet = get_packet(order_item_id, session=session)
            # Commit happens automatically if no exception
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================================
# Serialization
# =============================================================================


def _checkout_lock(lock_key: Tuple[str, Any]) -> _KeyedLockEntry:
    with _locks_guard:
        entry = _keyed_locks.get(lock_key)
        if entry is None:
            entry = _keyed_locks[lock_key] = _KeyedLockEntry()
        entry.users += 1
        return entry


def _checkin_lock(lock_key: Tuple[str, Any], entry: _KeyedLockEntry) -> None:
    with _locks_guard:
        entry.users -= 1
        if entry.users == 0:
            del _keyed_locks[lock_key]


@contextmanager
def keyed_lock(namespace: str, key: Any):
    """
    Hold the process-wide lock for (namespace, key).

    Locks are re-entrant so nested service calls on the same key do not deadlock.
    The lock is dropped from the registry once nobody holds or waits for it.
    """
    lock_key = (namespace, key)
    entry = _checkout_lock(lock_key)
    try:
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
    finally:
        _checkin_lock(lock_key, entry)


def held_lock_count() -> int:
    """Number of keyed locks currently held or waited for."""
    with _locks_guard:
        return len(_keyed_locks)


def order_item_lock(order_item_id: int):
    """
    Serialize workflow mutations for one order item.

    Enter this before session_scope() so the lock is held until after commit:

        with order_item_lock(order_item_id), session_scope() as session:
            ...

    Combined with SELECT ... FOR UPDATE on the owning row, two callers mutating
    the same order item never interleave.
    """
    return keyed_lock("order_item", order_item_id)


def order_lock(order_id: int):
    """Serialize order-level mutations (sales stage)."""
    return keyed_lock("order", order_id)


def round_robin_lock(key: str = ROSTER_PRODUCTION_HEADS):
    """
    Serialize rotation over one roster.

    Operations that may advance the rotation take it after order_item_lock()
    and before session_scope(), so the cursor stays locked until the
    assignment has committed:

        with order_item_lock(order_item_id), round_robin_lock(), session_scope() as session:
            ...
    """
    return keyed_lock("round_robin", key)


# =============================================================================
# Notifications
# =============================================================================


def queue_notification(session: Session, topic: str, payload: Dict[str, Any]) -> None:
    """
    Queue a notification for publication once the session commits.

    Notifications queued in a transaction that rolls back are discarded.
    """
    session.info.setdefault(_NOTIFICATION_QUEUE_KEY, []).append((topic, payload))


def pending_notifications(session: Session) -> List[Tuple[str, Dict[str, Any]]]:
    """Notifications queued on the session and not yet published."""
    return list(session.info.get(_NOTIFICATION_QUEUE_KEY, []))


def on_rollback(session: Session, action: Callable[[], None]) -> None:
    """
    Register an action that undoes an external side effect of this transaction.

    The action runs if the session rolls back and is forgotten once it commits.
    """
    session.info.setdefault(_ROLLBACK_ACTIONS_KEY, []).append(action)


@event.listens_for(Session, "after_commit")
def _publish_notifications(session):
    session.info.pop(_ROLLBACK_ACTIONS_KEY, None)
    queued = session.info.pop(_NOTIFICATION_QUEUE_KEY, [])
    if not queued:
        return

    from .collaborators import get_collaborators

    publisher = get_collaborators().notifications
    for topic, payload in queued:
        try:
            publisher.publish(topic, payload)
        except Exception as e:
            # Delivery is best effort; the committed state stands
            logger.error(f"Failed to publish notification '{topic}': {e}")


@event.listens_for(Session, "after_rollback")
def _discard_notifications(session):
    session.info.pop(_NOTIFICATION_QUEUE_KEY, None)

    for action in reversed(session.info.pop(_ROLLBACK_ACTIONS_KEY, [])):
        try:
            action()
        except Exception as e:
            # The rollback itself already happened; report the leftover side effect
            logger.error(f"Failed to undo external side effect after rollback: {e}")


# =============================================================================
# Maintenance
# =============================================================================


def database_exists() -> bool:
    """
    Check if the database file exists.

    Returns:
        True if database exists, False otherwise
    """
    return get_config().database_exists()


def verify_database() -> bool:
    """
    Verify that the database is accessible and has tables.

    Returns:
        True if database is valid, False otherwise
    """
    try:
        engine = get_engine()
        inspector = inspect(engine)
        tables = inspector.get_table_names()

        expected_tables = ["orders", "order_items", "packets"]
        return all(table in tables for table in expected_tables)
    except Exception as e:
        logger.error(f"Database verification failed: {e}")
        return False


def reset_database(confirm: bool = False) -> None:
    """
    Drop all tables and recreate the database.

    WARNING: This will delete all data!

    Args:
        confirm: Must be True to actually reset. Safety check.

    Raises:
        ValueError: If confirm is not True
    """
    if not confirm:
        raise ValueError("Must pass confirm=True to reset database. This will delete all data!")

    logger.warning("RESETTING DATABASE - ALL DATA WILL BE LOST")

    engine = get_engine()
    _import_models()

    Base.metadata.drop_all(engine)
    logger.info("All tables dropped")

    Base.metadata.create_all(engine)
    _seed_round_robin_cursor(engine)
    logger.info("Tables recreated")


def close_connections() -> None:
    """
    Close all database connections.

    Useful for cleanup or before application exit.
    """
    global _engine, _SessionFactory

    _SessionFactory = None

    if _engine is not None:
        _engine.dispose()
        _engine = None

    logger.info("Database connections closed")


def initialize_app_database() -> None:
    """
    Initialize the application database.

    Creates the database file and tables if they don't exist.
    """
    config = get_config()

    if not config.database_exists():
        logger.info(f"Creating new database at: {config.database_path}")
    else:
        logger.info(f"Using existing database at: {config.database_path}")

    engine = get_engine()
    init_database(engine)

    if verify_database():
        logger.info("Database initialized and verified successfully")
    else:
        logger.warning("Database verification failed - tables may not exist")
