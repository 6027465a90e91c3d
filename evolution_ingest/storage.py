import logging
from datetime import datetime, timezone
from typing import Generator, Iterable, List, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from evolution_ingest.config import settings

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("evolution_instances", "conversations", "messages")

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    pool_pre_ping=True,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def epoch_to_iso(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from evolution_ingest import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Instance Repository Functions
# =============================================================================

def get_instance_by_name(db: Session, instance_name: str):
    from evolution_ingest.models import Instance

    return db.query(Instance).filter(Instance.instance_name == instance_name).first()


def update_instance(db: Session, instance, **fields) -> bool:
    """
    Apply `fields` to an instance row and commit.

    Returns False (after rollback) when the write fails.
    """
    logger.debug(f"Updating instance {instance.instance_name}: {sorted(fields)}")
    try:
        for name, value in fields.items():
            setattr(instance, name, value)
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update instance {instance.instance_name}: {e}")
        return False


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def find_conversations(db: Session, instance_id: str, phones: Iterable[str]) -> List:
    """
    All conversations of an instance stored under any of `phones`,
    most recently active first.
    """
    from evolution_ingest.models import Conversation

    keys = sorted({p for p in phones if p})
    if not keys:
        return []
    return (
        db.query(Conversation)
        .filter(Conversation.instance_id == instance_id)
        .filter(Conversation.contact_phone.in_(keys))
        .order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
        .all()
    )


def list_conversations(db: Session, instance_id: str) -> List:
    from evolution_ingest.models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.instance_id == instance_id)
        .order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
        .all()
    )


def create_conversation(db: Session, **fields):
    """
    Insert and commit a conversation. Raises SQLAlchemyError on failure
    (after rollback); the caller decides whether that is fatal.
    """
    from evolution_ingest.models import Conversation

    conversation = Conversation(created_at=utc_now_iso(), **fields)
    try:
        db.add(conversation)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info(f"Conversation created: {conversation.id} phone={conversation.contact_phone}")
    return conversation


def reassign_messages(db: Session, from_conversation_id: str, to_conversation_id: str) -> int:
    """Move every message of one conversation to another (not committed)."""
    from evolution_ingest.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == from_conversation_id)
        .update({Message.conversation_id: to_conversation_id}, synchronize_session=False)
    )


def delete_conversation(db: Session, conversation) -> None:
    """Delete a conversation row (not committed)."""
    db.delete(conversation)


def count_messages(db: Session, conversation_id: str) -> int:
    from evolution_ingest.models import Message

    return db.query(Message).filter(Message.conversation_id == conversation_id).count()


# =============================================================================
# Message Repository Functions
# =============================================================================

def message_exists(db: Session, instance_id: str, external_id: Optional[str]) -> bool:
    from evolution_ingest.models import Message

    if not external_id:
        return False
    return (
        db.query(Message.id)
        .filter(Message.instance_id == instance_id, Message.external_id == external_id)
        .first()
        is not None
    )


def create_message(db: Session, message) -> Tuple[bool, bool, Optional[str]]:
    """
    Create a new message in the database (idempotent on external id).

    Args:
        db: Database session
        message: schemas.MessageCreate

    Returns:
        Tuple of (success, is_duplicate, error)
        - (True, False, None): Message created successfully
        - (True, True, None): Message already exists (duplicate, idempotent success)
        - (False, False, error): Error occurred
    """
    from evolution_ingest.models import Message

    logger.info(
        f"Creating message: external_id={message.external_id}, "
        f"conversation={message.conversation_id}, direction={message.direction}"
    )

    try:
        db.add(Message(created_at=utc_now_iso(), **message.model_dump()))
        db.commit()
        logger.info(f"Message created successfully: {message.id}")
        return (True, False, None)

    except IntegrityError:
        # (instance_id, external_id) already exists - expected for re-deliveries
        db.rollback()
        logger.info(f"Duplicate message detected: {message.external_id}")
        return (True, True, None)

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message {message.id}: {e}")
        return (False, False, str(e))
