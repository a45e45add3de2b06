"""
State machine sesi panggilan (in-memory, tidak dipersist).

Satu sesi per conversation: invited -> answered -> ended. Semua timer
(invite tidak dijawab, sesi idle, peserta putus koneksi) dicek lewat
``reap()`` yang dipanggil berkala oleh background sweeper.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from telemed.errors import InvalidCallState

logger = logging.getLogger(__name__)

STATE_INVITED = "invited"
STATE_ANSWERED = "answered"
STATE_ENDED = "ended"

INVITE_NEW = "new"
INVITE_RENEGOTIATE = "renegotiate"
INVITE_GLARE_WON = "glare_won"
INVITE_GLARE_LOST = "glare_lost"

END_NO_ANSWER = "no_answer"
END_INACTIVE = "inactive"
END_PEER_DISCONNECTED = "peer_disconnected"


@dataclass
class CallSession:
    conversation_id: int
    initiator: object
    callee: object
    state: str = STATE_INVITED
    started_at: float = 0.0
    last_activity: float = 0.0
    # channel yang mengirim re-offer setelah answered, menunggu answer dari sisi lain
    renegotiating: Optional[str] = None
    # channel -> waktu (monotonic) saat peserta kehilangan semua koneksinya
    dropped: dict = field(default_factory=dict)

    def involves(self, channel):
        return channel in (self.initiator.channel, self.callee.channel)

    def peer_of(self, sender):
        return self.callee if sender.channel == self.initiator.channel else self.initiator


def glare_winner(a, b):
    """Tie-break deterministik untuk invite bersamaan: channel yang lebih kecil menang."""
    return a if a.channel < b.channel else b


class CallRegistry:
    def __init__(self, invite_timeout=45, idle_timeout=3600, disconnect_grace=10, clock=time.monotonic):
        self.invite_timeout = invite_timeout
        self.idle_timeout = idle_timeout
        self.disconnect_grace = disconnect_grace
        self.clock = clock
        self._lock = threading.Lock()
        self._sessions = {}

    def get(self, conversation_id):
        with self._lock:
            return self._sessions.get(conversation_id)

    def invite(self, conversation_id, caller, callee):
        now = self.clock()
        with self._lock:
            session = self._sessions.get(conversation_id)

            if session is None:
                session = CallSession(conversation_id, caller, callee, started_at=now, last_activity=now)
                self._sessions[conversation_id] = session
                logger.info("Call %s invited by %s", conversation_id, caller.channel)
                return session, INVITE_NEW

            if session.state == STATE_ANSWERED:
                if not session.involves(caller.channel):
                    raise InvalidCallState("A call is already in progress in this conversation")
                # Re-offer di tengah panggilan (ICE restart), boleh dari kedua sisi
                session.renegotiating = caller.channel
                session.last_activity = now
                return session, INVITE_RENEGOTIATE

            if session.initiator.channel == caller.channel:
                # Offer ulang sebelum dijawab
                session.last_activity = now
                return session, INVITE_RENEGOTIATE

            # Glare: kedua sisi memanggil hampir bersamaan
            winner = glare_winner(session.initiator, caller)
            if winner.channel == caller.channel:
                session.initiator, session.callee = caller, session.initiator
                session.started_at = now
                session.last_activity = now
                logger.info("Call %s glare resolved for %s", conversation_id, caller.channel)
                return session, INVITE_GLARE_WON
            session.last_activity = now
            logger.info("Call %s glare resolved for %s", conversation_id, session.initiator.channel)
            return session, INVITE_GLARE_LOST

    def answer(self, conversation_id, sender):
        with self._lock:
            session = self._sessions.get(conversation_id)
            if (session is not None and session.renegotiating
                    and session.involves(sender.channel) and session.renegotiating != sender.channel):
                session.renegotiating = None
                session.last_activity = self.clock()
                return session
            if session is None or session.state != STATE_INVITED:
                raise InvalidCallState("There is no ringing call to answer")
            if session.callee.channel != sender.channel:
                raise InvalidCallState("Only the invited participant can answer")
            session.state = STATE_ANSWERED
            session.last_activity = self.clock()
            logger.info("Call %s answered by %s", conversation_id, sender.channel)
            return session

    def touch(self, conversation_id, sender):
        with self._lock:
            session = self._sessions.get(conversation_id)
            if session is None or not session.involves(sender.channel):
                raise InvalidCallState("There is no active call in this conversation")
            session.last_activity = self.clock()
            return session

    def end(self, conversation_id):
        with self._lock:
            session = self._sessions.pop(conversation_id, None)
        if session is not None:
            session.state = STATE_ENDED
            logger.info("Call %s ended", conversation_id)
        return session

    def mark_dropped(self, channel):
        now = self.clock()
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.involves(channel)]
            for session in sessions:
                session.dropped.setdefault(channel, now)
        return sessions

    def mark_returned(self, channel):
        with self._lock:
            for session in self._sessions.values():
                session.dropped.pop(channel, None)

    def reap(self, now=None):
        """Akhiri sesi yang timeout. Return list (session, reason)."""
        now = self.clock() if now is None else now
        finished = []
        with self._lock:
            for conversation_id, session in list(self._sessions.items()):
                reason = None
                if any(now - since >= self.disconnect_grace for since in session.dropped.values()):
                    reason = END_PEER_DISCONNECTED
                elif session.state == STATE_INVITED and now - session.last_activity >= self.invite_timeout:
                    reason = END_NO_ANSWER
                elif session.state == STATE_ANSWERED and now - session.last_activity >= self.idle_timeout:
                    reason = END_INACTIVE
                if reason:
                    del self._sessions[conversation_id]
                    session.state = STATE_ENDED
                    finished.append((session, reason))
        for session, reason in finished:
            logger.info("Call %s ended automatically (%s)", session.conversation_id, reason)
        return finished

    def __len__(self):
        with self._lock:
            return len(self._sessions)
