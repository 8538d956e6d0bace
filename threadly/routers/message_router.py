from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .. import conversations, schemas
from ..auth import get_current_user
from ..database import get_db
from ..dependencies import get_publisher
from ..messaging import EventPublisher
from ..models import Conversation, ConversationStatus, Message, User

router = APIRouter(
    prefix="/messages",
    tags=["Messages"]
)


def _notify_recipient(publisher: EventPublisher, conversation: Conversation, message: Message) -> None:
    publisher.notify_user(
        conversation.other_party(message.sender_id),
        "message.created",
        conversation_id=conversation.id,
        message_id=message.id,
        product_id=conversation.product_id,
        sender_id=message.sender_id,
    )


@router.get("/conversations", response_model=schemas.Envelope[schemas.Page[schemas.ConversationSummaryOut]])
def list_conversations(
    conversation_status: Optional[ConversationStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, total = conversations.list_conversations(
        db, current_user.id, status=conversation_status, skip=skip, limit=limit
    )
    return {
        "success": True,
        "data": {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}},
    }


@router.post("/conversations", response_model=schemas.Envelope[schemas.ConversationStartOut])
def start_conversation(
    body: schemas.ConversationCreate,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Ask the seller about a listing. Reuses the buyer's existing thread for that listing."""
    conversation, message, created = conversations.start_conversation(
        db, current_user, body.product_id, body.message
    )
    _notify_recipient(publisher, conversation, message)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return {
        "success": True,
        "data": {"conversation": conversation, "message": message},
        "message": "Conversation created successfully" if created else "Message sent to existing conversation",
    }


@router.get("/conversations/{conversation_id}", response_model=schemas.Envelope[schemas.ConversationOut])
def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": conversations.get_conversation_for_user(db, conversation_id, current_user)}


@router.patch("/conversations/{conversation_id}", response_model=schemas.Envelope[schemas.ConversationOut])
def update_conversation(
    conversation_id: int,
    body: schemas.ConversationStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conversation = conversations.set_conversation_status(db, conversation_id, current_user, body.status)
    archived = conversation.status == ConversationStatus.ARCHIVED
    return {
        "success": True,
        "data": conversation,
        "message": "Conversation archived" if archived else "Conversation reactivated",
    }


@router.get("", response_model=schemas.Envelope[schemas.Page[schemas.MessageOut]])
def list_messages(
    conversation_id: int = Query(..., gt=0),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, total = conversations.get_messages(db, conversation_id, current_user, skip=skip, limit=limit)
    return {
        "success": True,
        "data": {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}},
    }


@router.post("", response_model=schemas.Envelope[schemas.MessageOut], status_code=status.HTTP_201_CREATED)
def send_message(
    body: schemas.MessageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    conversation, message = conversations.send_message(db, body.conversation_id, current_user, body.content)
    _notify_recipient(publisher, conversation, message)
    return {"success": True, "data": message, "message": "Message sent successfully"}


@router.patch("/{message_id}", response_model=schemas.Envelope[schemas.MessageOut])
def mark_message(
    message_id: int,
    body: schemas.MessageReadUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    message = conversations.set_read(db, message_id, current_user, body.read)
    return {
        "success": True,
        "data": message,
        "message": f"Message marked as {'read' if body.read else 'unread'}",
    }


@router.delete("/{message_id}", response_model=schemas.Envelope[schemas.MessageOut])
def delete_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    message = conversations.delete_message(db, message_id, current_user)
    return {"success": True, "data": message, "message": "Message deleted successfully"}
