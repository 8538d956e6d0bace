"""
Buyer/seller conversations about a listing.

A buyer opens at most one conversation per (seller, product); opening it again
appends to the existing thread and reactivates it if it was archived. Messages
are soft-deleted by their sender within a short window.
"""
import datetime as dt
import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud
from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Conversation, ConversationStatus, Message, ProductStatus, User, utcnow

logger = logging.getLogger(__name__)

DELETE_WINDOW = dt.timedelta(minutes=5)
DELETED_PLACEHOLDER = "[Message deleted]"


def _as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite hands timestamps back naive
    return value if value.tzinfo is not None else value.replace(tzinfo=dt.timezone.utc)


# -----------------------------
# Conversations
# -----------------------------


def get_conversation_for_user(db: Session, conversation_id: int, user: User) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        raise NotFoundError(f"Conversation with id {conversation_id} not found", code="conversation_not_found")
    if user.id not in (conversation.buyer_id, conversation.seller_id):
        raise AuthorizationError("You are not part of this conversation")
    return conversation


def _require_active(conversation: Conversation) -> None:
    if conversation.status == ConversationStatus.ARCHIVED:
        raise AuthorizationError("Conversation is archived", code="conversation_archived")


def _find(db: Session, buyer_id: int, seller_id: int, product_id: int) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.buyer_id == buyer_id,
            Conversation.seller_id == seller_id,
            Conversation.product_id == product_id,
        )
        .first()
    )


def start_conversation(db: Session, buyer: User, product_id: int, content: str) -> Tuple[Conversation, Message, bool]:
    """Open (or reopen) the buyer's thread about ``product_id`` with a first message.

    Returns the conversation, the message and whether the conversation is new.
    """
    product = crud.get_product_or_404(db, product_id)
    if product.seller_id == buyer.id:
        raise ValidationError("You cannot message yourself", code="self_message")
    if product.status != ProductStatus.AVAILABLE:
        raise ValidationError(
            "Product is no longer available",
            code="product_unavailable",
            details={"product_id": product.id, "status": product.status.value},
        )

    conversation = _find(db, buyer.id, product.seller_id, product.id)
    created = conversation is None
    if created:
        conversation = Conversation(buyer_id=buyer.id, seller_id=product.seller_id, product_id=product.id)
        db.add(conversation)
        try:
            db.flush()
        except IntegrityError:
            # opened concurrently by the same buyer
            db.rollback()
            conversation = _find(db, buyer.id, product.seller_id, product.id)
            created = False

    conversation.status = ConversationStatus.ACTIVE
    conversation.updated_at = utcnow()
    message = Message(conversation_id=conversation.id, sender_id=buyer.id, content=content)
    db.add(message)
    db.commit()
    db.refresh(conversation)
    db.refresh(message)
    logger.info(
        "Conversation %s %s by buyer %s on product %s",
        conversation.id,
        "opened" if created else "resumed",
        buyer.id,
        product.id,
    )
    return conversation, message, created


def list_conversations(
    db: Session,
    user_id: int,
    status: Optional[ConversationStatus] = None,
    skip: int = 0,
    limit: int = 20,
) -> Tuple[List[dict], int]:
    """The user's conversations by latest activity, each with its last message and unread count."""
    query = db.query(Conversation).filter(or_(Conversation.buyer_id == user_id, Conversation.seller_id == user_id))
    if status is not None:
        query = query.filter(Conversation.status == status)
    total = query.count()
    conversations = (
        query.order_by(Conversation.updated_at.desc(), Conversation.id.desc()).offset(skip).limit(limit).all()
    )
    ids = [c.id for c in conversations]
    if not ids:
        return [], total

    unread = dict(
        db.query(Message.conversation_id, func.count(Message.id))
        .filter(
            Message.conversation_id.in_(ids),
            Message.read.is_(False),
            Message.sender_id != user_id,
        )
        .group_by(Message.conversation_id)
        .all()
    )
    latest_ids = (
        select(func.max(Message.id))
        .where(Message.conversation_id.in_(ids))
        .group_by(Message.conversation_id)
    )
    last_messages = {m.conversation_id: m for m in db.query(Message).filter(Message.id.in_(latest_ids)).all()}

    items = [
        {
            "conversation": c,
            "is_buyer": c.buyer_id == user_id,
            "last_message": last_messages.get(c.id),
            "unread_count": int(unread.get(c.id, 0)),
        }
        for c in conversations
    ]
    return items, total


def set_conversation_status(
    db: Session, conversation_id: int, user: User, status: ConversationStatus
) -> Conversation:
    conversation = get_conversation_for_user(db, conversation_id, user)
    conversation.status = status
    db.commit()
    db.refresh(conversation)
    return conversation


# -----------------------------
# Messages
# -----------------------------


def get_messages(
    db: Session,
    conversation_id: int,
    user: User,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[Message], int]:
    """A page of messages, oldest first. Messages from the other party on the page are marked read."""
    conversation = get_conversation_for_user(db, conversation_id, user)
    _require_active(conversation)

    query = db.query(Message).filter(Message.conversation_id == conversation.id)
    total = query.count()
    page = query.order_by(Message.created_at.desc(), Message.id.desc()).offset(skip).limit(limit).all()

    unread_ids = [m.id for m in page if m.sender_id != user.id and not m.read]
    if unread_ids:
        db.query(Message).filter(Message.id.in_(unread_ids)).update(
            {Message.read: True}, synchronize_session=False
        )
        db.commit()
        for message in page:
            db.refresh(message)
    return list(reversed(page)), total


def send_message(db: Session, conversation_id: int, sender: User, content: str) -> Tuple[Conversation, Message]:
    conversation = get_conversation_for_user(db, conversation_id, sender)
    _require_active(conversation)

    message = Message(conversation_id=conversation.id, sender_id=sender.id, content=content)
    db.add(message)
    conversation.updated_at = utcnow()
    db.commit()
    db.refresh(message)
    return conversation, message


def _get_message_for_user(db: Session, message_id: int, user: User) -> Message:
    message = db.query(Message).filter(Message.id == message_id).first()
    if message is None:
        raise NotFoundError(f"Message with id {message_id} not found", code="message_not_found")
    get_conversation_for_user(db, message.conversation_id, user)
    return message


def set_read(db: Session, message_id: int, user: User, read: bool) -> Message:
    message = _get_message_for_user(db, message_id, user)
    if message.sender_id == user.id:
        raise ValidationError("You cannot mark your own message as read", code="own_message")
    message.read = read
    db.commit()
    db.refresh(message)
    return message


def delete_message(db: Session, message_id: int, user: User, now: Optional[dt.datetime] = None) -> Message:
    """Replace the content of the sender's own recent message with a placeholder."""
    message = _get_message_for_user(db, message_id, user)
    if message.sender_id != user.id:
        raise AuthorizationError("You can only delete your own messages")
    if (now or utcnow()) - _as_utc(message.created_at) > DELETE_WINDOW:
        raise ValidationError(
            "Messages can only be deleted within 5 minutes of sending",
            code="delete_window_expired",
        )
    message.content = DELETED_PLACEHOLDER
    db.commit()
    db.refresh(message)
    return message
