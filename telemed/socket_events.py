import logging
from functools import wraps

from flask import current_app, request
from flask_socketio import ConnectionRefusedError, emit
from sqlalchemy.exc import SQLAlchemyError

from telemed.errors import AuthenticationError, Forbidden, TelemedError, ValidationError
from telemed.extensions import db, socketio
from telemed.models.user import ROLE_DOCTOR, ROLE_USER
from telemed.realtime.broker import conversation_room
from telemed.realtime.calls import INVITE_GLARE_LOST, INVITE_GLARE_WON
from telemed.utils.auth import AuthenticatedSender, authenticate_token

logger = logging.getLogger(__name__)


def _realtime():
    return current_app.extensions["realtime"]


def _extract_token(auth):
    if isinstance(auth, dict) and auth.get("token"):
        return auth["token"]
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header.split(" ", 1)[1].strip()
    return request.args.get("token")


def _conversation_id(data):
    try:
        return int(data.get("conversationId"))
    except (TypeError, ValueError):
        raise ValidationError("conversationId is required")


def _sender_info(sender):
    return {"id": sender.id, "type": sender.role}


def _typing_payload(sender):
    return {"userId": sender.id, "userType": sender.role}


def socket_handler(event, error_event="chat_error"):
    """Error tidak pernah menembus transport: diubah jadi event error ke koneksi peminta saja."""

    def decorator(f):
        @wraps(f)
        def wrapper(data=None):
            realtime = _realtime()
            conn = realtime.registry.get(request.sid)
            if not isinstance(data, dict):
                data = {}
            try:
                if conn is None:
                    raise AuthenticationError()
                result = f(realtime, conn, data)
                return {"ok": True, **(result or {})}
            except TelemedError as e:
                db.session.rollback()
                logger.warning("Rejected %s from %s: %s", event, request.sid, e.message)
                payload = {"event": event, **e.to_dict()}
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception("Database error while handling %s", event)
                payload = {"event": event, "code": "server_error", "message": f"Failed to process {event}"}
            emit(error_event, payload)
            return {"ok": False, **payload}
        return wrapper
    return decorator


def require_joined(conn, conversation_id):
    if not conn.in_conversation(conversation_id):
        raise Forbidden("Join the conversation before sending events to it")


# =========================
# CONNECTION LIFECYCLE
# =========================
@socketio.on('connect')
def handle_connect(auth=None):
    try:
        sender = authenticate_token(_extract_token(auth))
    except AuthenticationError:
        logger.warning("Socket %s rejected: invalid credentials", request.sid)
        raise ConnectionRefusedError('Authentication error')

    realtime = _realtime()
    first = realtime.registry.add(request.sid, sender)
    # Channel pribadi supaya invite panggilan sampai walau belum join room percakapan
    realtime.broker.join(request.sid, sender.channel)
    realtime.calls.mark_returned(sender.channel)
    logger.info("Client connected: %s (%s)", request.sid, sender.channel)

    if first:
        realtime.set_presence(sender, True)

    if current_app.config.get("CALL_SWEEPER_ENABLED"):
        realtime.start_sweeper(socketio, current_app.config["CALL_SWEEP_INTERVAL_SECONDS"])


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    realtime = _realtime()
    conn, last = realtime.registry.remove(request.sid)
    if conn is None:
        return
    logger.info("Client disconnected: %s (%s)", request.sid, conn.sender.channel)

    if last:
        # Sesi panggilan diakhiri sweeper kalau tidak reconnect dalam masa tenggang
        realtime.calls.mark_dropped(conn.sender.channel)
        try:
            realtime.set_presence(conn.sender, False)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not update presence for %s", conn.sender.channel)


# =========================
# ROOMS
# =========================
@socketio.on('join_conversation')
@socket_handler('join_conversation')
def handle_join_conversation(realtime, conn, data):
    conversation_id = _conversation_id(data)
    realtime.chat.get_conversation(conversation_id, conn.sender)
    realtime.broker.join(conn.sid, conversation_room(conversation_id))
    realtime.registry.joined(conn.sid, conversation_id)
    logger.info("Client %s joined room %s", conn.sid, conversation_room(conversation_id))
    return {"conversationId": conversation_id}


@socketio.on('leave_conversation')
@socket_handler('leave_conversation')
def handle_leave_conversation(realtime, conn, data):
    conversation_id = _conversation_id(data)
    realtime.broker.leave(conn.sid, conversation_room(conversation_id))
    realtime.registry.left(conn.sid, conversation_id)
    logger.info("Client %s left room %s", conn.sid, conversation_room(conversation_id))
    return {"conversationId": conversation_id}


# =========================
# CHAT
# =========================
@socketio.on('send_message')
@socket_handler('send_message')
def handle_send_message(realtime, conn, data):
    conversation_id = _conversation_id(data)
    require_joined(conn, conversation_id)

    # senderType tidak pernah dibaca dari payload
    message = realtime.chat.send_message(
        conversation_id,
        conn.sender,
        body=data.get("message"),
        message_type=data.get("messageType") or "text",
        attachments=data.get("attachments"),
        reply_to=data.get("replyTo"),
    )

    # Broadcast setelah commit; pengirim juga menerima salinan resmi
    realtime.to_conversation("new_message", {
        "conversationId": conversation_id,
        "message": message.to_dict(),
        "clientId": data.get("clientId"),
    }, conversation_id)
    realtime.to_conversation("typing_stopped", {
        "conversationId": conversation_id,
        **_typing_payload(conn.sender),
    }, conversation_id, skip_sid=conn.sid)
    return {"messageId": message.id}


@socketio.on('typing_start')
@socket_handler('typing_start')
def handle_typing_start(realtime, conn, data):
    conversation_id = _conversation_id(data)
    require_joined(conn, conversation_id)
    realtime.to_conversation("typing_start", {
        "conversationId": conversation_id,
        **_typing_payload(conn.sender),
    }, conversation_id, skip_sid=conn.sid)


@socketio.on('typing_stop')
@socket_handler('typing_stop')
def handle_typing_stop(realtime, conn, data):
    conversation_id = _conversation_id(data)
    require_joined(conn, conversation_id)
    realtime.to_conversation("typing_stopped", {
        "conversationId": conversation_id,
        **_typing_payload(conn.sender),
    }, conversation_id, skip_sid=conn.sid)


@socketio.on('mark_as_read')
@socket_handler('mark_as_read')
def handle_mark_as_read(realtime, conn, data):
    conversation_id = _conversation_id(data)
    require_joined(conn, conversation_id)
    marked = realtime.chat.mark_as_read(conversation_id, conn.sender, data.get("messageIds"))
    if marked:
        realtime.to_conversation("messages_read", {
            "conversationId": conversation_id,
            "messageIds": marked,
            "readBy": _sender_info(conn.sender),
        }, conversation_id)
    return {"messageIds": marked}


@socketio.on('delete_message')
@socket_handler('delete_message')
def handle_delete_message(realtime, conn, data):
    try:
        message_id = int(data.get("messageId"))
    except (TypeError, ValueError):
        raise ValidationError("messageId is required")

    message, conversation = realtime.chat.soft_delete_message(message_id, conn.sender)
    realtime.to_conversation("message_deleted", {
        "messageId": message.id,
        "conversationId": conversation.id,
        "deletedBy": conn.sender.id,
    }, conversation.id)
    return {"messageId": message.id}


@socketio.on('restore_message')
@socket_handler('restore_message')
def handle_restore_message(realtime, conn, data):
    try:
        message_id = int(data.get("messageId"))
    except (TypeError, ValueError):
        raise ValidationError("messageId is required")

    message, conversation = realtime.chat.restore_message(message_id, conn.sender)
    realtime.to_conversation("message_restored", {
        "conversationId": conversation.id,
        "message": message.to_dict(),
    }, conversation.id)
    return {"messageId": message.id}


# =========================
# CALL SIGNALING (hanya routing, tanpa persistensi)
# =========================
def _call_peer(realtime, conn, conversation_id):
    conversation = realtime.chat.get_conversation(conversation_id, conn.sender)
    if conn.sender.role == ROLE_DOCTOR:
        return AuthenticatedSender(role=ROLE_USER, id=conversation.user_id)
    return AuthenticatedSender(role=ROLE_DOCTOR, id=conversation.doctor_id)


@socketio.on('call_invite')
@socket_handler('call_invite', error_event='call_error')
def handle_call_invite(realtime, conn, data):
    conversation_id = _conversation_id(data)
    peer = _call_peer(realtime, conn, conversation_id)

    target = data.get("target")
    if isinstance(target, dict) and target.get("id") is not None:
        if str(target.get("id")) != str(peer.id) or target.get("type", peer.role) != peer.role:
            raise Forbidden("The call target is not part of this conversation")

    session, outcome = realtime.calls.invite(conversation_id, conn.sender, peer)

    if outcome == INVITE_GLARE_LOST:
        # Pihak ini jadi callee: jawab offer yang sudah ada
        emit("call_glare", {
            "conversationId": conversation_id,
            "initiator": _sender_info(session.initiator),
        })
        return {"outcome": outcome}

    realtime.to_identity("call_invite", {
        "conversationId": conversation_id,
        "offer": data.get("offer"),
        "from": _sender_info(conn.sender),
    }, peer)
    if outcome == INVITE_GLARE_WON:
        realtime.to_identity("call_glare", {
            "conversationId": conversation_id,
            "initiator": _sender_info(conn.sender),
        }, peer)
    return {"outcome": outcome}


@socketio.on('call_answer')
@socket_handler('call_answer', error_event='call_error')
def handle_call_answer(realtime, conn, data):
    conversation_id = _conversation_id(data)
    _call_peer(realtime, conn, conversation_id)
    session = realtime.calls.answer(conversation_id, conn.sender)
    realtime.to_identity("call_answer", {
        "conversationId": conversation_id,
        "answer": data.get("answer"),
        "from": _sender_info(conn.sender),
    }, session.peer_of(conn.sender))


@socketio.on('call_candidate')
@socket_handler('call_candidate', error_event='call_error')
def handle_call_candidate(realtime, conn, data):
    conversation_id = _conversation_id(data)
    _call_peer(realtime, conn, conversation_id)
    session = realtime.calls.touch(conversation_id, conn.sender)
    realtime.to_identity("call_candidate", {
        "conversationId": conversation_id,
        "candidate": data.get("candidate"),
        "from": _sender_info(conn.sender),
    }, session.peer_of(conn.sender))


@socketio.on('call_end')
@socket_handler('call_end', error_event='call_error')
def handle_call_end(realtime, conn, data):
    conversation_id = _conversation_id(data)
    peer = _call_peer(realtime, conn, conversation_id)
    realtime.calls.end(conversation_id)
    # Tetap diteruskan walau sesi sudah tidak ada, supaya sisi lain pasti menutup panggilan
    realtime.to_identity("call_end", {
        "conversationId": conversation_id,
        "reason": data.get("reason") or "ended",
        "from": _sender_info(conn.sender),
    }, peer)
