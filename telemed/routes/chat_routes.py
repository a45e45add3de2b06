from flask import Blueprint, current_app, request

from telemed.errors import ValidationError
from telemed.models.user import ROLE_DOCTOR, ROLE_USER
from telemed.utils.auth import role_required
from telemed.utils.response import success

chat_bp = Blueprint('chat_api', __name__, url_prefix='/api/chat')

CHAT_ROLES = (ROLE_USER, ROLE_DOCTOR)


def _realtime():
    return current_app.extensions["realtime"]


def _int_field(data, name):
    try:
        return int(data.get(name))
    except (TypeError, ValueError):
        raise ValidationError(f"{name} is required")


def _pagination(total, page, limit):
    return {"page": page, "limit": limit, "total": total, "has_more": page * limit < total}


# --- 1. MULAI / LANJUTKAN PERCAKAPAN ---
@chat_bp.route('/conversations', methods=['POST'])
@role_required(ROLE_USER)
def start_conversation(sender):
    data = request.get_json(silent=True) or {}
    conversation, created = _realtime().chat.get_or_create_conversation(sender, _int_field(data, 'doctor_id'))
    if created:
        return success(conversation.to_dict(sender), "Conversation started", 201)
    return success(conversation.to_dict(sender), "Continuing conversation")


# --- 2. INBOX (daftar percakapan milik pemanggil) ---
@chat_bp.route('/conversations', methods=['GET'])
@role_required(*CHAT_ROLES)
def list_conversations(sender):
    chat = _realtime().chat
    page = request.args.get('page', default=1, type=int)
    limit = request.args.get('limit', default=chat.page_size, type=int)

    rows, total = chat.list_conversations(sender, page, limit)
    page, limit = chat.page_params(page, limit)
    return success({
        "conversations": [c.to_dict(sender) for c in rows],
        "pagination": _pagination(total, page, limit),
    }, "Conversations fetched")


@chat_bp.route('/conversations/<int:conversation_id>', methods=['DELETE'])
@role_required(*CHAT_ROLES)
def close_conversation(sender, conversation_id):
    conversation = _realtime().chat.deactivate_conversation(conversation_id, sender)
    return success(conversation.to_dict(sender), "Conversation closed")


@chat_bp.route('/conversations/<int:conversation_id>/read', methods=['PATCH'])
@role_required(*CHAT_ROLES)
def mark_conversation_read(sender, conversation_id):
    realtime = _realtime()
    data = request.get_json(silent=True) or {}
    marked = realtime.chat.mark_as_read(conversation_id, sender, data.get('message_ids'))
    if marked:
        realtime.to_conversation("messages_read", {
            "conversationId": conversation_id,
            "messageIds": marked,
            "readBy": {"id": sender.id, "type": sender.role},
        }, conversation_id)
    return success({"message_ids": marked}, "Messages marked as read")


@chat_bp.route('/conversations/<int:conversation_id>/unread', methods=['GET'])
@role_required(*CHAT_ROLES)
def unread_count(sender, conversation_id):
    count = _realtime().chat.unread_count(conversation_id, sender)
    return success({"conversation_id": conversation_id, "unread_count": count}, "Unread count fetched")


# --- 3. KIRIM PESAN (fallback kalau socket putus) ---
@chat_bp.route('/messages', methods=['POST'])
@role_required(*CHAT_ROLES)
def send_message(sender):
    realtime = _realtime()
    data = request.get_json(silent=True) or {}
    conversation_id = _int_field(data, 'conversation_id')

    # sender_type dari body diabaikan, role selalu dari token
    message = realtime.chat.send_message(
        conversation_id,
        sender,
        body=data.get('message'),
        message_type=data.get('message_type') or 'text',
        attachments=data.get('attachments'),
        reply_to=data.get('reply_to'),
    )

    # Jalur REST tetap memberi tahu room, payload sama dengan jalur socket
    realtime.to_conversation("new_message", {
        "conversationId": conversation_id,
        "message": message.to_dict(),
        "clientId": data.get('client_id'),
    }, conversation_id)
    return success(message.to_dict(), "Message sent", 201)


# --- 4. RIWAYAT CHAT ---
@chat_bp.route('/messages/<int:conversation_id>', methods=['GET'])
@role_required(*CHAT_ROLES)
def get_messages(sender, conversation_id):
    chat = _realtime().chat
    page = request.args.get('page', default=1, type=int)
    limit = request.args.get('limit', default=chat.page_size, type=int)

    rows, total = chat.list_messages(conversation_id, sender, page, limit)
    page, limit = chat.page_params(page, limit)
    return success({
        "messages": [
            {**m.to_dict(), "is_me": m.is_authored_by(sender)}
            for m in rows
        ],
        "pagination": _pagination(total, page, limit),
    }, "Chat history fetched")


@chat_bp.route('/messages/<int:message_id>/soft-delete', methods=['PATCH'])
@role_required(*CHAT_ROLES)
def soft_delete_message(sender, message_id):
    realtime = _realtime()
    message, conversation = realtime.chat.soft_delete_message(message_id, sender)
    realtime.to_conversation("message_deleted", {
        "messageId": message.id,
        "conversationId": conversation.id,
        "deletedBy": sender.id,
    }, conversation.id)
    return success(message.to_dict(), "Message deleted")


@chat_bp.route('/messages/<int:message_id>/restore', methods=['PATCH'])
@role_required(*CHAT_ROLES)
def restore_message(sender, message_id):
    realtime = _realtime()
    message, conversation = realtime.chat.restore_message(message_id, sender)
    realtime.to_conversation("message_restored", {
        "conversationId": conversation.id,
        "message": message.to_dict(),
    }, conversation.id)
    return success(message.to_dict(), "Message restored")
