import logging

from telemed.extensions import db
from telemed.models.user import User
from telemed.realtime.broker import SocketIOBroker, conversation_room
from telemed.realtime.calls import CallRegistry
from telemed.realtime.registry import ConnectionRegistry
from telemed.services.chat_service import ChatService

logger = logging.getLogger(__name__)


class Realtime:
    """State router realtime per aplikasi (bukan global proses)."""

    def __init__(self, broker, chat, calls, registry=None):
        self.broker = broker
        self.chat = chat
        self.calls = calls
        self.registry = registry or ConnectionRegistry()
        self._sweeper_started = False

    # =========================
    # BROADCAST HELPERS
    # =========================
    def to_conversation(self, event, payload, conversation_id, skip_sid=None):
        self.broker.emit(event, payload, conversation_room(conversation_id), skip_sid=skip_sid)

    def to_identity(self, event, payload, sender):
        self.broker.emit(event, payload, sender.channel)

    def set_presence(self, sender, is_online):
        """Update status online dan umumkan hanya ke room percakapan milik identitas ini."""
        user = db.session.get(User, sender.id)
        if user is not None and user.role == sender.role:
            user.is_online = is_online
            db.session.commit()
        payload = {"userId": sender.id, "userType": sender.role, "isOnline": is_online}
        for conversation_id in self.chat.active_conversation_ids(sender):
            self.to_conversation("user_status_changed", payload, conversation_id)

    # =========================
    # CALL TIMERS
    # =========================
    def end_call(self, session, reason):
        """Diakhiri server (timeout), jadi kedua peserta diberi tahu."""
        payload = {"conversationId": session.conversation_id, "reason": reason, "from": None}
        for participant in (session.initiator, session.callee):
            self.to_identity("call_end", payload, participant)

    def sweep_calls(self, now=None):
        finished = self.calls.reap(now)
        for session, reason in finished:
            self.end_call(session, reason)
        return finished

    def start_sweeper(self, socketio, interval):
        if self._sweeper_started:
            return
        self._sweeper_started = True

        def run():
            while True:
                socketio.sleep(interval)
                try:
                    self.sweep_calls()
                except Exception:
                    logger.exception("Call sweeper iteration failed")

        socketio.start_background_task(run)
        logger.info("Call sweeper started (every %ss)", interval)


def init_realtime(app, socketio):
    realtime = Realtime(
        broker=SocketIOBroker(socketio),
        chat=ChatService(
            max_attachments=app.config["CHAT_MAX_ATTACHMENTS"],
            page_size=app.config["CHAT_PAGE_SIZE"],
            max_page_size=app.config["CHAT_MAX_PAGE_SIZE"],
        ),
        calls=CallRegistry(
            invite_timeout=app.config["CALL_INVITE_TIMEOUT_SECONDS"],
            idle_timeout=app.config["CALL_IDLE_TIMEOUT_SECONDS"],
            disconnect_grace=app.config["CALL_DISCONNECT_GRACE_SECONDS"],
        ),
    )
    app.extensions["realtime"] = realtime
    return realtime
