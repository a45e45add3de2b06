import threading
from dataclasses import dataclass, field


@dataclass
class Connection:
    """Konteks per koneksi: identitas hasil handshake + room percakapan yang sudah di-join."""

    sid: str
    sender: object
    conversations: set = field(default_factory=set)

    def in_conversation(self, conversation_id):
        return conversation_id in self.conversations


class ConnectionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._connections = {}
        self._channels = {}

    def add(self, sid, sender):
        """Return True kalau ini koneksi pertama untuk identitas tersebut."""
        with self._lock:
            self._connections[sid] = Connection(sid=sid, sender=sender)
            sids = self._channels.setdefault(sender.channel, set())
            first = not sids
            sids.add(sid)
        return first

    def remove(self, sid):
        """Return (connection, last) dengan last=True kalau identitas tidak punya koneksi lain."""
        with self._lock:
            conn = self._connections.pop(sid, None)
            if conn is None:
                return None, False
            sids = self._channels.get(conn.sender.channel, set())
            sids.discard(sid)
            last = not sids
            if last:
                self._channels.pop(conn.sender.channel, None)
        return conn, last

    def get(self, sid):
        with self._lock:
            return self._connections.get(sid)

    def joined(self, sid, conversation_id):
        with self._lock:
            conn = self._connections.get(sid)
            if conn is not None:
                conn.conversations.add(conversation_id)

    def left(self, sid, conversation_id):
        with self._lock:
            conn = self._connections.get(sid)
            if conn is not None:
                conn.conversations.discard(conversation_id)

    def __len__(self):
        with self._lock:
            return len(self._connections)
