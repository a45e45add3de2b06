import uuid

from sqlalchemy import text

from telemed.extensions import db
from telemed.utils.clock import utcnow

STATUS_LOCKED = "locked"
STATUS_FINALIZED = "finalized"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"

ACTIVE_STATUSES = (STATUS_LOCKED, STATUS_FINALIZED)

ORDER_PREFIX = "SLOT"

_ACTIVE_PREDICATE = text("status IN ('locked', 'finalized')")


class SlotLock(db.Model):
    """Reservasi satu slot (dokter, tanggal, jam). Status finalized = booking permanen."""

    __tablename__ = 'slot_locks'
    __table_args__ = (
        # Satu slot hanya boleh punya satu baris locked/finalized.
        # Index inilah primitive insert-if-absent yang atomic.
        db.Index(
            'uq_slot_locks_active_slot',
            'doctor_id', 'slot_date', 'slot_time',
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        db.Index('ix_slot_locks_slot', 'doctor_id', 'slot_date', 'slot_time', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    slot_date = db.Column(db.Date, nullable=False)
    slot_time = db.Column(db.String(8), nullable=False)  # "10:00 AM"

    # 'locked' (menunggu bayar), 'finalized', 'cancelled', 'expired'
    status = db.Column(db.String(20), nullable=False, default=STATUS_LOCKED)

    amount = db.Column(db.Integer, default=0)
    payment_order_id = db.Column(db.String(100), nullable=True)
    payment_reference = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    finalized_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    doctor = db.relationship('User', foreign_keys=[doctor_id])
    user = db.relationship('User', foreign_keys=[user_id])

    def is_overdue(self, now):
        return self.status == STATUS_LOCKED and now > self.expires_at

    def new_order_id(self):
        # Midtrans menolak order id yang sama dipakai 2x
        return f"{ORDER_PREFIX}-{self.id}-{uuid.uuid4().hex[:12]}"

    def owns_order(self, order_id):
        """Semua order yang pernah dibuat untuk lock ini sah, bukan cuma yang terakhir."""
        return str(order_id or "").startswith(f"{ORDER_PREFIX}-{self.id}-")

    def to_dict(self):
        return {
            "id": self.id,
            "doctor_id": self.doctor_id,
            "user_id": self.user_id,
            "slot_date": self.slot_date.isoformat(),
            "slot_time": self.slot_time,
            "status": self.status,
            "amount": self.amount,
            "payment_order_id": self.payment_order_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }
