import logging
from typing import Any, Generator, Optional, Tuple

from sqlalchemy import create_engine, text, func, inspect, case, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from waba_inbox.config import settings
from waba_inbox.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = (
    {"check_same_thread": False}
    if settings.DATABASE_URL.startswith("sqlite")
    else {}
)

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

REQUIRED_TABLES = ("tenants", "contacts", "messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from waba_inbox import models  # noqa: F401

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
        True if DB is healthy and all tables exist, False otherwise.
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


def _dialect_insert(db: Session):
    """Return the dialect-specific insert() that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")


# =============================================================================
# Tenant Repository Functions
# =============================================================================

def get_tenant_by_channel_id(db: Session, channel_id: str):
    """
    Find the tenant that owns a provider phone_number_id.

    Returns:
        Tenant object if found, None otherwise
    """
    from waba_inbox.models import Tenant

    return db.query(Tenant).filter(Tenant.channel_id == channel_id).one_or_none()


def get_tenant_by_verify_token(db: Session, verify_token: str):
    """Find the tenant whose webhook verification secret equals verify_token."""
    from waba_inbox.models import Tenant

    return db.query(Tenant).filter(Tenant.verify_token == verify_token).one_or_none()


def mark_tenant_verified(db: Session, tenant) -> None:
    tenant.webhook_verified = True
    tenant.updated_at = utc_now_iso()
    db.commit()
    logger.info(f"Webhook verified for tenant: {tenant.id}")


# =============================================================================
# Contact Repository Functions
# =============================================================================

def upsert_contact(db: Session, phone: str, name: str, last_active: str) -> bool:
    """
    Create the contact for phone, or refresh last_active if it already exists.

    Runs as a single INSERT .. ON CONFLICT statement so overlapping deliveries
    for the same number cannot race. An existing name is never overwritten,
    and last_active only moves forward (ISO-8601 strings compare in order).

    Returns:
        True on success, False if the statement failed (logged, rolled back)
    """
    from waba_inbox.models import Contact

    try:
        insert = _dialect_insert(db)
        stmt = insert(Contact).values(
            phone=phone,
            name=name,
            last_active=last_active,
            created_at=utc_now_iso(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Contact.phone],
            set_={
                "last_active": case(
                    (
                        or_(
                            Contact.last_active.is_(None),
                            stmt.excluded.last_active > Contact.last_active,
                        ),
                        stmt.excluded.last_active,
                    ),
                    else_=Contact.last_active,
                )
            },
        )

        db.execute(stmt)
        db.commit()
        logger.debug(f"Contact upserted: {phone}")
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to upsert contact {phone}: {e}")
        return False


def get_contact(db: Session, phone: str):
    from waba_inbox.models import Contact

    return db.query(Contact).filter(Contact.phone == phone).one_or_none()


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    message_id: str,
    sender_id: str,
    receiver_id: str,
    content: str,
    timestamp: str,
    message_type: str,
    media_data: Optional[dict[str, Any]] = None,
) -> Tuple[bool, bool]:
    """
    Create a new inbound message in the database (idempotent).

    Args:
        db: Database session
        message_id: Provider message identifier
        sender_id: Sender phone number
        receiver_id: Tenant id (the tenant always receives inbound traffic)
        content: Display content produced by the classifier
        timestamp: Message timestamp (ISO-8601 UTC)
        message_type: Provider message type
        media_data: Media descriptor, None for text messages

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created successfully
        - (True, True): Message id already stored (duplicate, idempotent success)
        - (False, False): Error occurred
    """
    from waba_inbox.models import Message

    logger.info(f"Creating message: id={message_id}, from={sender_id}, to={receiver_id}")

    try:
        message = Message(
            id=message_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            timestamp=timestamp,
            is_sent_by_me=False,
            is_read=False,
            message_type=message_type,
            media_data=media_data,
            created_at=utc_now_iso(),
        )

        db.add(message)
        db.commit()
        logger.info(f"Message created successfully: {message_id}")
        return (True, False)

    except IntegrityError:
        # message id already exists - redelivery by the provider
        db.rollback()
        logger.info(f"Duplicate message detected: {message_id}")
        return (True, True)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create message {message_id}: {e}")
        return (False, False)


def get_message_by_id(db: Session, message_id: str):
    """
    Retrieve a message by its provider ID.

    Returns:
        Message object if found, None otherwise
    """
    from waba_inbox.models import Message

    return db.query(Message).filter(Message.id == message_id).one_or_none()


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    receiver_id: Optional[str] = None,
    sender_id: Optional[str] = None,
    message_type: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve messages with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        receiver_id: Filter by tenant (exact match)
        sender_id: Filter by sender phone number (exact match)
        message_type: Filter by message type (exact match)

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from waba_inbox.models import Message

    logger.debug(
        f"Querying messages: limit={limit}, offset={offset}, "
        f"receiver={receiver_id}, sender={sender_id}, type={message_type}"
    )

    query = db.query(Message)

    if receiver_id:
        query = query.filter(Message.receiver_id == receiver_id)
    if sender_id:
        query = query.filter(Message.sender_id == sender_id)
    if message_type:
        query = query.filter(Message.message_type == message_type)

    total = query.count()

    # Insertion order preserves the provider's per-sender delivery order
    messages = query.order_by(Message.seq.asc()).offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


def get_stats(db: Session, receiver_id: Optional[str] = None) -> dict:
    """
    Get message statistics for the /stats endpoint.

    Computes:
    - total_messages: count of all messages
    - senders_count: number of unique senders
    - messages_per_type: message count per message type (desc)
    - media_relay_failures: media messages whose relay did not succeed

    Returns:
        Dictionary with stats data
    """
    from waba_inbox.models import Message

    def scoped(query):
        if receiver_id:
            return query.filter(Message.receiver_id == receiver_id)
        return query

    total_messages = scoped(db.query(func.count(Message.seq))).scalar() or 0
    senders_count = scoped(
        db.query(func.count(func.distinct(Message.sender_id)))
    ).scalar() or 0

    per_type_rows = (
        scoped(db.query(Message.message_type, func.count(Message.seq).label("count")))
        .group_by(Message.message_type)
        .order_by(func.count(Message.seq).desc(), Message.message_type.asc())
        .all()
    )
    messages_per_type = [
        {"message_type": row.message_type, "count": row.count}
        for row in per_type_rows
    ]

    media_relay_failures = scoped(
        db.query(func.count(Message.seq)).filter(
            Message.media_data.isnot(None),
            Message.media_data["s3_uploaded"].as_boolean().is_(False),
        )
    ).scalar() or 0

    logger.info(f"Stats computed: {total_messages} messages, {senders_count} senders")

    return {
        "total_messages": total_messages,
        "senders_count": senders_count,
        "messages_per_type": messages_per_type,
        "media_relay_failures": media_relay_failures,
    }
