import logging
import uuid
from datetime import datetime, timezone
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, inspect, or_, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from smscrm.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("sms_messages", "sender_accounts", "sender_phone_numbers", "contacts")


def utc_now_iso() -> str:
    """Server time as ISO-8601 UTC with a Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    return str(uuid.uuid4())


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from smscrm import models  # noqa: F401

        logger.debug("Creating database tables...")
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
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        inspector = inspect(engine)
        for table in REQUIRED_TABLES:
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    direction: str,
    from_number: Optional[str],
    to_number: Optional[str],
    body: Optional[str] = None,
    status: Optional[str] = None,
    provider_message_sid: Optional[str] = None,
    conversation_id: Optional[str] = None,
    sender_phone_number_id: Optional[str] = None,
    media_count: int = 0,
    sent_at: Optional[str] = None,
    received_at: Optional[str] = None,
    message_id: Optional[str] = None,
):
    """
    Create a new message in the database (idempotent on provider_message_sid).

    Args:
        db: Database session
        direction: "inbound" or "outbound"
        from_number: Sending phone number
        to_number: Receiving phone number
        body: Message text
        status: Provider delivery status
        provider_message_sid: Provider message identifier, unique when present
        conversation_id: Conversation key, if already known
        sender_phone_number_id: Configured sender phone the message went through
        media_count: Number of attached media items
        sent_at: Send time (outbound)
        received_at: Receive time (inbound)
        message_id: Explicit id; generated when omitted

    Returns:
        Tuple of (success: bool, is_duplicate: bool, message)
        - (True, False, message): Message created successfully
        - (True, True, existing): provider_message_sid already stored
        - (False, False, None): Error occurred
    """
    from smscrm.models import Message

    message_id = message_id or new_id()
    logger.info(f"Creating message: id={message_id}, direction={direction}, from={from_number}, to={to_number}")
    logger.debug(f"Message details: sid={provider_message_sid}, conversation={conversation_id}")

    try:
        message = Message(
            id=message_id,
            direction=direction,
            from_number=from_number,
            to_number=to_number,
            body=body,
            status=status,
            provider_message_sid=provider_message_sid,
            conversation_id=conversation_id,
            sender_phone_number_id=sender_phone_number_id,
            media_count=media_count,
            sent_at=sent_at,
            received_at=received_at,
            created_at=utc_now_iso(),
        )

        db.add(message)
        db.commit()
        db.refresh(message)
        logger.info(f"Message created successfully: {message_id}")
        return (True, False, message)

    except IntegrityError:
        # provider_message_sid already exists - webhook redelivery
        db.rollback()
        logger.info(f"Duplicate message detected: sid={provider_message_sid}")
        existing = get_message_by_provider_sid(db, provider_message_sid) if provider_message_sid else None
        return (True, True, existing)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create message {message_id}: {e}")
        return (False, False, None)


def get_message_by_id(db: Session, message_id: str):
    """
    Retrieve a message by its ID.

    Returns:
        Message object if found, None otherwise
    """
    from smscrm.models import Message

    logger.debug(f"Looking up message by ID: {message_id}")
    return db.query(Message).filter(Message.id == message_id).first()


def get_message_by_provider_sid(db: Session, provider_message_sid: str):
    """Retrieve a message by the provider's message SID."""
    from smscrm.models import Message

    logger.debug(f"Looking up message by provider SID: {provider_message_sid}")
    return db.query(Message).filter(Message.provider_message_sid == provider_message_sid).first()


def update_message(db: Session, message_id: str, **changes):
    """
    Apply a partial update to a message.

    Only status fields and the conversation key are expected to change after
    creation; unknown attribute names raise AttributeError.

    Returns:
        Updated Message, or None if no message has that id
    """
    message = get_message_by_id(db, message_id)
    if message is None:
        logger.warning(f"Update skipped, message not found: {message_id}")
        return None

    for field, value in changes.items():
        if not hasattr(message, field):
            raise AttributeError(f"Message has no field '{field}'")
        setattr(message, field, value)

    db.commit()
    db.refresh(message)
    logger.info(f"Message updated: {message_id}, fields={sorted(changes)}")
    return message


def delete_message(db: Session, message_id: str) -> bool:
    """
    Delete a single message.

    Returns:
        True if a row was deleted, False otherwise
    """
    message = get_message_by_id(db, message_id)
    if message is None:
        return False
    try:
        db.delete(message)
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to delete message {message_id}: {e}")
        return False


def list_messages(
    db: Session,
    conversation_id: Optional[str] = None,
    phone_numbers: Optional[Iterable[str]] = None,
    sender_phone_number_id: Optional[str] = None,
    phone_fragment: Optional[str] = None,
) -> list:
    """
    List messages matching every supplied filter.

    Args:
        db: Database session
        conversation_id: Exact conversation key
        phone_numbers: Phone representations matched against from_number OR to_number
        sender_phone_number_id: Sender binding id
        phone_fragment: Substring matched against from_number OR to_number

    Returns:
        Messages ordered by created_at ASC, id ASC
    """
    from smscrm.models import Message

    query = db.query(Message)

    if conversation_id is not None:
        query = query.filter(Message.conversation_id == conversation_id)
        logger.debug(f"Applied conversation filter: {conversation_id}")

    if phone_numbers is not None:
        phones = list(phone_numbers)
        query = query.filter(or_(Message.from_number.in_(phones), Message.to_number.in_(phones)))
        logger.debug(f"Applied phone filter: {phones}")

    if sender_phone_number_id is not None:
        query = query.filter(Message.sender_phone_number_id == sender_phone_number_id)
        logger.debug(f"Applied sender binding filter: {sender_phone_number_id}")

    if phone_fragment is not None:
        pattern = f"%{phone_fragment}%"
        query = query.filter(or_(Message.from_number.like(pattern), Message.to_number.like(pattern)))
        logger.debug(f"Applied phone fragment filter: {phone_fragment}")

    messages = query.order_by(Message.created_at.asc(), Message.id.asc()).all()
    logger.debug(f"Retrieved {len(messages)} messages")
    return messages


# =============================================================================
# Sender Account / Phone Number Repository Functions
# =============================================================================

def create_sender_account(
    db: Session,
    account_name: str,
    account_sid: str,
    auth_token: str,
    conversation_service_sid: Optional[str] = None,
    is_active: bool = True,
) -> Tuple[bool, object]:
    """
    Create a sender account.

    Returns:
        Tuple of (created: bool, account or None). created is False when the
        account_sid already exists.
    """
    from smscrm.models import SenderAccount

    now = utc_now_iso()
    account = SenderAccount(
        id=new_id(),
        account_name=account_name,
        provider="twilio",
        account_sid=account_sid,
        auth_token=auth_token,
        conversation_service_sid=conversation_service_sid,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(account)
        db.commit()
        db.refresh(account)
        logger.info(f"Sender account created: {account.id}")
        return (True, account)
    except IntegrityError:
        db.rollback()
        logger.info(f"Sender account already exists for SID {account_sid}")
        return (False, None)


def get_sender_account(db: Session, account_id: str):
    from smscrm.models import SenderAccount

    return db.query(SenderAccount).filter(SenderAccount.id == account_id).first()


def list_sender_accounts(db: Session) -> list:
    from smscrm.models import SenderAccount

    return db.query(SenderAccount).order_by(SenderAccount.created_at.asc()).all()


def create_sender_phone_number(
    db: Session,
    account_id: str,
    phone_number: str,
    friendly_name: Optional[str] = None,
    is_primary: bool = False,
    is_active: bool = True,
):
    """Create a sender phone number bound to an existing account."""
    from smscrm.models import SenderPhoneNumber

    now = utc_now_iso()
    phone = SenderPhoneNumber(
        id=new_id(),
        account_id=account_id,
        phone_number=phone_number,
        friendly_name=friendly_name,
        is_primary=is_primary,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
    db.add(phone)
    db.commit()
    db.refresh(phone)
    logger.info(f"Sender phone number created: {phone.id} ({phone_number})")
    return phone


def get_sender_phone_number(db: Session, phone_number_id: str):
    from smscrm.models import SenderPhoneNumber

    return db.query(SenderPhoneNumber).filter(SenderPhoneNumber.id == phone_number_id).first()


def list_sender_phone_numbers(db: Session, active_only: bool = False) -> list:
    from smscrm.models import SenderPhoneNumber

    query = db.query(SenderPhoneNumber)
    if active_only:
        query = query.filter(SenderPhoneNumber.is_active.is_(True))
    return query.order_by(SenderPhoneNumber.created_at.asc()).all()


def find_sender_phone_by_number(db: Session, phone_numbers: Iterable[str]):
    """First active sender phone whose number is one of the given representations."""
    from smscrm.models import SenderPhoneNumber

    return (
        db.query(SenderPhoneNumber)
        .filter(SenderPhoneNumber.phone_number.in_(list(phone_numbers)))
        .filter(SenderPhoneNumber.is_active.is_(True))
        .first()
    )


# =============================================================================
# Contact Repository Functions
# =============================================================================

def create_contact(db: Session, phone: str, name: Optional[str] = None, crm_id: Optional[str] = None):
    from smscrm.models import Contact

    now = utc_now_iso()
    contact = Contact(id=new_id(), name=name, phone=phone, crm_id=crm_id, created_at=now, updated_at=now)
    db.add(contact)
    db.commit()
    db.refresh(contact)
    logger.info(f"Contact created: {contact.id}")
    return contact


def list_contacts(db: Session) -> list:
    from smscrm.models import Contact

    return db.query(Contact).order_by(Contact.created_at.asc()).all()
