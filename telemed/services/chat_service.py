"""
Persistensi percakapan dan pesan.

Jalur REST dan jalur socket sama-sama lewat service ini, jadi satu pesan
selalu punya satu representasi di database apa pun transport-nya.
Role pengirim selalu berasal dari ``AuthenticatedSender``, tidak pernah dari
payload client.
"""

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from telemed.errors import ConversationNotFound, Forbidden, MessageNotFound, ValidationError
from telemed.extensions import db
from telemed.models.chat import MESSAGE_TYPES, SENDER_TYPES, Conversation, Message
from telemed.models.user import ROLE_DOCTOR, ROLE_USER, User
from telemed.utils.clock import utcnow

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 120


def _require_chat_role(sender):
    if sender.role not in SENDER_TYPES:
        raise Forbidden("Only patients and doctors can chat")


def _normalize_attachments(attachments, limit):
    if attachments is None:
        return []
    if not isinstance(attachments, list):
        raise ValidationError("attachments must be a list")
    if len(attachments) > limit:
        raise ValidationError(f"A message can carry at most {limit} attachments")

    cleaned = []
    for item in attachments:
        # Client lama mengirim URL saja
        if isinstance(item, str):
            item = {"url": item}
        if not isinstance(item, dict) or not isinstance(item.get("url"), str) or not item["url"].strip():
            raise ValidationError("Every attachment needs a url")
        cleaned.append({
            "url": item["url"].strip(),
            "file_name": item.get("file_name") or item.get("fileName"),
            "mime_type": item.get("mime_type") or item.get("mimeType"),
            "file_size": item.get("file_size") or item.get("fileSize"),
        })
    return cleaned


def _preview(message):
    if message.body:
        return message.body[:PREVIEW_LENGTH]
    return "[attachment]"


class ChatService:
    def __init__(self, max_attachments=5, page_size=20, max_page_size=100):
        self.max_attachments = max_attachments
        self.page_size = page_size
        self.max_page_size = max_page_size

    # =========================
    # CONVERSATIONS
    # =========================
    def get_or_create_conversation(self, sender, doctor_id):
        if sender.role != ROLE_USER:
            raise Forbidden("Only patients can start a conversation")

        doctor = db.session.get(User, doctor_id)
        if doctor is None or doctor.role != ROLE_DOCTOR:
            raise ValidationError("Doctor not found")

        existing = Conversation.query.filter_by(user_id=sender.id, doctor_id=doctor_id, is_active=True).first()
        if existing:
            return existing, False

        conversation = Conversation(user_id=sender.id, doctor_id=doctor_id)
        db.session.add(conversation)
        try:
            db.session.commit()
        except IntegrityError:
            # Request lain sudah membuat percakapan untuk pasangan yang sama
            db.session.rollback()
            existing = Conversation.query.filter_by(user_id=sender.id, doctor_id=doctor_id, is_active=True).first()
            if existing is None:
                raise
            return existing, False

        logger.info("Conversation %s created for user %s and doctor %s", conversation.id, sender.id, doctor_id)
        return conversation, True

    def get_conversation(self, conversation_id, sender):
        """Ambil percakapan dan pastikan sender adalah salah satu pesertanya."""
        conversation = db.session.get(Conversation, conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        if not conversation.is_participant(sender):
            raise Forbidden("You are not a participant of this conversation")
        return conversation

    def list_conversations(self, sender, page=1, limit=None):
        _require_chat_role(sender)
        page, limit = self.page_params(page, limit)
        column = Conversation.doctor_id if sender.role == ROLE_DOCTOR else Conversation.user_id

        query = Conversation.query.filter(column == sender.id, Conversation.is_active.is_(True))
        total = query.count()
        rows = (
            query.order_by(Conversation.last_message_at.desc().nullslast(), Conversation.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def active_conversation_ids(self, sender):
        if sender.role not in SENDER_TYPES:
            return []
        column = Conversation.doctor_id if sender.role == ROLE_DOCTOR else Conversation.user_id
        rows = db.session.query(Conversation.id).filter(column == sender.id, Conversation.is_active.is_(True)).all()
        return [row.id for row in rows]

    def deactivate_conversation(self, conversation_id, sender):
        conversation = self.get_conversation(conversation_id, sender)
        conversation.is_active = False
        db.session.commit()
        logger.info("Conversation %s deactivated by %s", conversation_id, sender.channel)
        return conversation

    # =========================
    # MESSAGES
    # =========================
    def send_message(self, conversation_id, sender, body=None, message_type="text", attachments=None, reply_to=None):
        _require_chat_role(sender)
        conversation = self.get_conversation(conversation_id, sender)
        if not conversation.is_active:
            raise Forbidden("This conversation is closed")

        message_type = message_type or "text"
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"message_type must be one of {', '.join(MESSAGE_TYPES)}")

        body = body.strip() if isinstance(body, str) else body
        if body is not None and not isinstance(body, str):
            raise ValidationError("message must be text")
        attachments = _normalize_attachments(attachments, self.max_attachments)
        if not body and (message_type == "text" or not attachments):
            raise ValidationError("Message cannot be empty")

        if reply_to is not None:
            parent = db.session.get(Message, reply_to)
            if parent is None or parent.conversation_id != conversation.id:
                raise MessageNotFound("The message you replied to does not exist")

        now = utcnow()
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender.id,
            sender_type=sender.role,
            body=body or None,
            message_type=message_type,
            attachments=attachments,
            reply_to_id=reply_to,
            created_at=now,
        )
        db.session.add(message)

        conversation.last_message = _preview(message)
        conversation.last_message_at = now
        # Unread bertambah untuk lawan bicara
        if sender.role == ROLE_DOCTOR:
            conversation.user_unread_count = Conversation.user_unread_count + 1
        else:
            conversation.doctor_unread_count = Conversation.doctor_unread_count + 1

        db.session.commit()
        logger.info("Message %s stored in conversation %s by %s", message.id, conversation.id, sender.channel)
        return message

    def list_messages(self, conversation_id, sender, page=1, limit=None):
        self.get_conversation(conversation_id, sender)
        page, limit = self.page_params(page, limit)

        query = Message.query.filter_by(conversation_id=conversation_id)
        total = query.count()
        rows = (
            query.order_by(Message.created_at.asc(), Message.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def mark_as_read(self, conversation_id, sender, message_ids=None):
        """Tandai pesan lawan bicara sebagai dibaca. message_ids=None berarti semua."""
        conversation = self.get_conversation(conversation_id, sender)

        query = Message.query.filter(
            Message.conversation_id == conversation.id,
            Message.is_read.is_(False),
            # Pesan milik sendiri tidak ikut ditandai
            Message.sender_type != sender.role,
        )
        if message_ids is not None:
            if not isinstance(message_ids, list):
                raise ValidationError("messageIds must be a list")
            try:
                ids = [int(i) for i in message_ids]
            except (TypeError, ValueError):
                raise ValidationError("messageIds must contain message ids")
            if not ids:
                return []
            query = query.filter(Message.id.in_(ids))

        marked = [row.id for row in query.with_entities(Message.id).order_by(Message.id).all()]
        if marked:
            db.session.execute(
                update(Message)
                .where(Message.id.in_(marked))
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )

        remaining = Message.query.filter(
            Message.conversation_id == conversation.id,
            Message.is_read.is_(False),
            Message.sender_type != sender.role,
        ).count()
        if sender.role == ROLE_DOCTOR:
            conversation.doctor_unread_count = remaining
        else:
            conversation.user_unread_count = remaining

        db.session.commit()
        return marked

    def unread_count(self, conversation_id, sender):
        conversation = self.get_conversation(conversation_id, sender)
        return conversation.unread_for(sender.role)

    def _authored_message(self, message_id, sender):
        message = db.session.get(Message, message_id)
        if message is None:
            raise MessageNotFound()
        conversation = self.get_conversation(message.conversation_id, sender)
        if not message.is_authored_by(sender):
            raise Forbidden("You can only change your own messages")
        return message, conversation

    def soft_delete_message(self, message_id, sender):
        message, conversation = self._authored_message(message_id, sender)
        if not message.is_deleted:
            message.is_deleted = True
            message.deleted_at = utcnow()
            message.deleted_by = sender.id
            db.session.commit()
            logger.info("Message %s soft-deleted by %s", message_id, sender.channel)
        return message, conversation

    def restore_message(self, message_id, sender):
        message, conversation = self._authored_message(message_id, sender)
        if message.is_deleted:
            message.is_deleted = False
            message.deleted_at = None
            message.deleted_by = None
            db.session.commit()
            logger.info("Message %s restored by %s", message_id, sender.channel)
        return message, conversation

    def page_params(self, page, limit):
        try:
            page = max(1, int(page or 1))
            limit = int(limit or self.page_size)
        except (TypeError, ValueError):
            raise ValidationError("page and limit must be numbers")
        return page, max(1, min(limit, self.max_page_size))
