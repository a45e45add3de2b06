"""
Primitive room/broadcast yang dipakai handler.

Handler hanya bicara ke ``RoomBroker``. Implementasi default memakai server
Flask-SocketIO; kalau ``SOCKETIO_MESSAGE_QUEUE`` diisi, Flask-SocketIO
meneruskan emit lewat backplane (redis dsb.) sehingga banyak instance bisa
berbagi room tanpa mengubah handler.
"""

NAMESPACE = "/"


def conversation_room(conversation_id):
    return f"conversation_{conversation_id}"


class RoomBroker:
    def join(self, sid, room):
        raise NotImplementedError

    def leave(self, sid, room):
        raise NotImplementedError

    def emit(self, event, payload, room, skip_sid=None):
        raise NotImplementedError


class SocketIOBroker(RoomBroker):
    def __init__(self, socketio):
        self.socketio = socketio

    def join(self, sid, room):
        self.socketio.server.enter_room(sid, room, namespace=NAMESPACE)

    def leave(self, sid, room):
        self.socketio.server.leave_room(sid, room, namespace=NAMESPACE)

    def emit(self, event, payload, room, skip_sid=None):
        self.socketio.emit(event, payload, to=room, skip_sid=skip_sid, namespace=NAMESPACE)
