from sqlalchemy import text

from telemed.extensions import db
from telemed.utils.clock import utcnow

MESSAGE_TYPES = ("text", "image", "file", "mixed")
SENDER_TYPES = ("user", "doctor")


class Conversation(db.Model):
    __tablename__ = 'conversations'
    __table_args__ = (
        # Hanya satu percakapan aktif per pasangan pasien-dokter
        db.Index(
            'uq_conversations_active_pair',
            'user_id', 'doctor_id',
            unique=True,
            sqlite_where=text('is_active = 1'),
            postgresql_where=text('is_active'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    last_message = db.Column(db.Text, nullable=True)
    last_message_at = db.Column(db.DateTime, nullable=True)

    # Jumlah belum dibaca, dihitung per sisi yang melihat
    user_unread_count = db.Column(db.Integer, default=0, nullable=False)
    doctor_unread_count = db.Column(db.Integer, default=0, nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', foreign_keys=[user_id])
    doctor = db.relationship('User', foreign_keys=[doctor_id])

    @property
    def room(self):
        return f"conversation_{self.id}"

    def participant_id(self, role):
        return self.doctor_id if role == "doctor" else self.user_id

    def is_participant(self, sender):
        return sender.role in SENDER_TYPES and self.participant_id(sender.role) == sender.id

    def unread_for(self, role):
        return self.doctor_unread_count if role == "doctor" else self.user_unread_count

    def to_dict(self, viewer=None):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "doctor_id": self.doctor_id,
            "last_message": self.last_message,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if viewer is not None:
            data["unread_count"] = self.unread_for(viewer.role)
        return data


class Message(db.Model):
    __tablename__ = 'messages'
    __table_args__ = (
        db.Index('ix_messages_conversation_created', 'conversation_id', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversations.id'), nullable=False)

    sender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    sender_type = db.Column(db.String(10), nullable=False)  # 'user' / 'doctor'

    body = db.Column(db.Text, nullable=True)
    message_type = db.Column(db.String(10), nullable=False, default="text")
    attachments = db.Column(db.JSON, nullable=False, default=list)

    # Referensi lemah ke pesan lain (hanya id, bukan kepemilikan)
    reply_to_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, default=False, nullable=False)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_at = db.Column(db.DateTime, nullable=True)
    deleted_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    conversation = db.relationship('Conversation', backref=db.backref('messages', lazy='dynamic'))

    def is_authored_by(self, sender):
        return self.sender_id == sender.id and self.sender_type == sender.role

    def to_dict(self):
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "sender_type": self.sender_type,
            # Isi pesan yang sudah dihapus tidak ikut dikirim
            "body": None if self.is_deleted else self.body,
            "message_type": self.message_type,
            "attachments": [] if self.is_deleted else list(self.attachments or []),
            "reply_to": self.reply_to_id,
            "is_read": self.is_read,
            "is_deleted": self.is_deleted,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat(),
        }
