"""
Slot Lock Manager.

Menahan satu slot (dokter, tanggal, jam) untuk satu user selama proses
pembayaran. Tidak ada lock di memori proses: eksklusivitas sepenuhnya
dijamin oleh unique index parsial di tabel ``slot_locks``, jadi service ini
aman dipakai banyak instance sekaligus.
"""

import logging
import re
from datetime import date, datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from telemed.errors import (
    InvalidLockState,
    LockExpired,
    LockNotFound,
    LockNotOwnedByCaller,
    SlotUnavailable,
    ValidationError,
)
from telemed.extensions import db
from telemed.models.slot_lock import (
    ACTIVE_STATUSES,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_FINALIZED,
    STATUS_LOCKED,
    SlotLock,
)
from telemed.models.user import ROLE_DOCTOR, User
from telemed.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOCK_MINUTES = 10

_TIME_LABEL = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")


def parse_slot_date(value):
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value or "").strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("slot_date must use the YYYY-MM-DD format")


def normalize_slot_time(value):
    """'9:00 am' -> '09:00 AM'. Label slot selalu lebar tetap."""
    match = _TIME_LABEL.match(str(value or ""))
    if not match:
        raise ValidationError("slot_time must look like '10:00 AM'")
    hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
    if not 1 <= hour <= 12 or minute > 59:
        raise ValidationError("slot_time is not a valid clock time")
    return f"{hour:02d}:{minute:02d} {meridiem}"


class SlotLockManager:
    def __init__(self, lock_minutes=DEFAULT_LOCK_MINUTES, clock=utcnow):
        self.lock_window = timedelta(minutes=lock_minutes)
        self.clock = clock

    # =========================
    # HELPERS
    # =========================
    def _expire_overdue(self, now, doctor_id=None, slot_date=None, slot_time=None):
        """Flip lock yang sudah lewat waktu jadi 'expired' (lazy expiry, satu UPDATE bersyarat)."""
        stmt = (
            update(SlotLock)
            .where(SlotLock.status == STATUS_LOCKED, SlotLock.expires_at < now)
            .values(status=STATUS_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if doctor_id is not None:
            stmt = stmt.where(SlotLock.doctor_id == doctor_id)
        if slot_date is not None:
            stmt = stmt.where(SlotLock.slot_date == slot_date)
        if slot_time is not None:
            stmt = stmt.where(SlotLock.slot_time == slot_time)
        return db.session.execute(stmt).rowcount

    def _get_lock(self, lock_id):
        lock = db.session.get(SlotLock, lock_id)
        if lock is None:
            raise LockNotFound()
        return lock

    # =========================
    # OPERATIONS
    # =========================
    def lock_slot(self, doctor_id, slot_date, slot_time, user_id):
        slot_date = parse_slot_date(slot_date)
        slot_time = normalize_slot_time(slot_time)
        now = self.clock()

        if slot_date < now.date():
            raise ValidationError("Cannot book a slot in the past")

        doctor = db.session.get(User, doctor_id)
        if doctor is None or doctor.role != ROLE_DOCTOR:
            raise ValidationError("Doctor not found")

        lock = SlotLock(
            doctor_id=doctor_id,
            user_id=user_id,
            slot_date=slot_date,
            slot_time=slot_time,
            status=STATUS_LOCKED,
            amount=doctor.consultation_price or 0,
            created_at=now,
            expires_at=now + self.lock_window,
        )
        try:
            self._expire_overdue(now, doctor_id=doctor_id, slot_date=slot_date, slot_time=slot_time)
            db.session.add(lock)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("Slot %s %s %s already held, lock refused for user %s",
                        doctor_id, slot_date, slot_time, user_id)
            raise SlotUnavailable()
        except SQLAlchemyError:
            # Primitive atomic tidak tersedia: tolak (fail closed), jangan ambil risiko double booking
            db.session.rollback()
            logger.exception("Slot lock store unavailable for %s %s %s", doctor_id, slot_date, slot_time)
            raise SlotUnavailable("This slot could not be reserved right now, please try again")

        logger.info("Slot lock %s created: doctor=%s %s %s user=%s expires=%s",
                    lock.id, doctor_id, slot_date, slot_time, user_id, lock.expires_at.isoformat())
        return lock

    def attach_payment_order(self, lock_id, user_id):
        """Buat order id baru untuk lock. Order lama tetap sah untuk finalize."""
        lock = self._get_lock(lock_id)
        if lock.user_id != user_id:
            raise LockNotOwnedByCaller()
        if lock.status != STATUS_LOCKED:
            raise InvalidLockState()
        if lock.is_overdue(self.clock()):
            raise LockExpired()
        order_id = lock.new_order_id()
        lock.payment_order_id = order_id
        db.session.commit()
        return lock, order_id

    def finalize_slot(self, lock_id, user_id, payment_reference=None):
        """Dipanggil setelah collaborator pembayaran menyatakan pembayaran valid."""
        now = self.clock()
        lock = self._get_lock(lock_id)

        if lock.user_id != user_id:
            raise LockNotOwnedByCaller()
        if lock.status == STATUS_FINALIZED:
            raise InvalidLockState("This appointment is already booked")
        if lock.status == STATUS_CANCELLED:
            raise InvalidLockState("This reservation was cancelled")
        if lock.status == STATUS_EXPIRED or lock.is_overdue(now):
            self._expire_overdue(now, doctor_id=lock.doctor_id, slot_date=lock.slot_date, slot_time=lock.slot_time)
            db.session.commit()
            raise LockExpired()

        # Transisi bersyarat: hanya berhasil kalau masih locked dan belum lewat waktu
        result = db.session.execute(
            update(SlotLock)
            .where(
                SlotLock.id == lock_id,
                SlotLock.user_id == user_id,
                SlotLock.status == STATUS_LOCKED,
                SlotLock.expires_at >= now,
            )
            .values(status=STATUS_FINALIZED, finalized_at=now, payment_reference=payment_reference)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise InvalidLockState("This reservation changed while confirming, please check your bookings")
        db.session.commit()
        db.session.refresh(lock)
        logger.info("Slot lock %s finalized (payment=%s)", lock_id, payment_reference)
        return lock

    def cancel_lock(self, lock_id, user_id):
        """Idempotent. Booking yang sudah finalized harus lewat cancel_booking."""
        now = self.clock()
        lock = self._get_lock(lock_id)

        if lock.user_id != user_id:
            raise LockNotOwnedByCaller()
        if lock.status == STATUS_FINALIZED:
            raise InvalidLockState("This appointment is already booked, cancel the booking instead")
        if lock.status != STATUS_LOCKED:
            return lock

        db.session.execute(
            update(SlotLock)
            .where(SlotLock.id == lock_id, SlotLock.status == STATUS_LOCKED)
            .values(status=STATUS_CANCELLED, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        db.session.refresh(lock)
        logger.info("Slot lock %s released by user %s", lock_id, user_id)
        return lock

    def cancel_booking(self, lock_id, user_id):
        now = self.clock()
        lock = self._get_lock(lock_id)

        if lock.user_id != user_id:
            raise LockNotOwnedByCaller()
        if lock.status == STATUS_CANCELLED:
            return lock
        if lock.status != STATUS_FINALIZED:
            raise InvalidLockState("Only confirmed appointments can be cancelled here")

        db.session.execute(
            update(SlotLock)
            .where(SlotLock.id == lock_id, SlotLock.status == STATUS_FINALIZED)
            .values(status=STATUS_CANCELLED, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        db.session.refresh(lock)
        logger.info("Booking %s cancelled by user %s", lock_id, user_id)
        return lock

    def _flush_overdue(self, holders, **slot):
        # Hanya jam sungguhan yang boleh mengubah status; `now` dari caller cuma untuk membaca
        real_now = self.clock()
        if any(lock.is_overdue(real_now) for lock in holders):
            self._expire_overdue(real_now, **slot)
            db.session.commit()

    def is_slot_available(self, doctor_id, slot_date, slot_time, now=None):
        """`now` boleh di masa depan (simulasi), tapi tidak pernah ditulis ke database."""
        now = now or self.clock()
        slot_date = parse_slot_date(slot_date)
        slot_time = normalize_slot_time(slot_time)

        holders = SlotLock.query.filter(
            SlotLock.doctor_id == doctor_id,
            SlotLock.slot_date == slot_date,
            SlotLock.slot_time == slot_time,
            SlotLock.status.in_(ACTIVE_STATUSES),
        ).all()

        available = all(lock.is_overdue(now) for lock in holders)
        self._flush_overdue(holders, doctor_id=doctor_id, slot_date=slot_date, slot_time=slot_time)
        return available

    def booked_times(self, doctor_id, slot_date, now=None):
        now = now or self.clock()
        slot_date = parse_slot_date(slot_date)

        holders = SlotLock.query.filter(
            SlotLock.doctor_id == doctor_id,
            SlotLock.slot_date == slot_date,
            SlotLock.status.in_(ACTIVE_STATUSES),
        ).all()

        taken = sorted(
            {lock.slot_time for lock in holders if not lock.is_overdue(now)},
            key=lambda label: datetime.strptime(label, "%I:%M %p"),
        )
        self._flush_overdue(holders, doctor_id=doctor_id, slot_date=slot_date)
        return taken

    def sweep_expired(self):
        """Sweep aktif (opsional): expire semua lock yang sudah lewat waktu."""
        count = self._expire_overdue(self.clock())
        db.session.commit()
        if count:
            logger.info("Expired %d overdue slot locks", count)
        return count
