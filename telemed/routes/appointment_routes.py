from flask import Blueprint, current_app, request

from telemed.errors import LockNotFound, LockNotOwnedByCaller, PaymentNotVerified, ValidationError
from telemed.extensions import db
from telemed.models.slot_lock import STATUS_LOCKED, SlotLock
from telemed.models.user import ROLE_USER, User
from telemed.services.payment_service import payment_service
from telemed.utils.auth import role_required
from telemed.utils.response import error, success

appointment_bp = Blueprint('appointment_api', __name__, url_prefix='/api/appointments')


def _slot_locks():
    return current_app.extensions["slot_locks"]


def _doctor_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("doctor_id is required")


# --- 1. LOCK SLOT (Tahan slot selama proses bayar) ---
@appointment_bp.route('/lock', methods=['POST'])
@role_required(ROLE_USER)
def lock_slot(sender):
    data = request.get_json(silent=True) or {}

    lock = _slot_locks().lock_slot(
        doctor_id=_doctor_id(data.get('doctor_id')),
        slot_date=data.get('slot_date'),
        slot_time=data.get('slot_time'),
        user_id=sender.id,
    )
    return success({
        "lock_id": lock.id,
        "expires_at": lock.expires_at.isoformat(),
        "lock": lock.to_dict(),
    }, "Slot reserved, please complete the payment", 201)


# --- 2. BUAT TAGIHAN UNTUK SLOT YANG DITAHAN ---
@appointment_bp.route('/lock/<int:lock_id>/payment', methods=['POST'])
@role_required(ROLE_USER)
def create_payment(sender, lock_id):
    lock, order_id = _slot_locks().attach_payment_order(lock_id, sender.id)

    user = db.session.get(User, sender.id)
    midtrans_resp = payment_service.create_transaction(
        order_id=order_id,
        amount=lock.amount,
        customer_details={
            "first_name": user.full_name if user else None,
            "email": user.email if user else None,
        },
    )
    if not midtrans_resp:
        return error("Could not reach the payment gateway", 502)

    return success({
        "lock_id": lock.id,
        "order_id": order_id,
        "amount": lock.amount,
        "payment_url": midtrans_resp['redirect_url'],
        "payment_token": midtrans_resp['token'],
    }, "Payment created, please open payment_url to pay")


# --- 3. FINALIZE (Pembayaran terverifikasi -> booking permanen) ---
@appointment_bp.route('/finalize', methods=['POST'])
@role_required(ROLE_USER)
def finalize(sender):
    data = request.get_json(silent=True) or {}
    try:
        lock_id = int(data.get('lock_id'))
    except (TypeError, ValueError):
        raise ValidationError("lock_id is required")

    payment = data.get('payment') or {}
    order_id = payment.get('order_id')
    if not order_id:
        raise ValidationError("Missing payment details")

    lock = db.session.get(SlotLock, lock_id)
    if lock is None:
        raise LockNotFound()
    if lock.user_id != sender.id:
        raise LockNotOwnedByCaller()
    # Gateway hanya ditanya selama slot masih ditahan
    if lock.status == STATUS_LOCKED:
        if not lock.owns_order(order_id):
            raise PaymentNotVerified("This payment does not belong to the reservation")
        if not payment_service.is_paid(order_id):
            raise PaymentNotVerified()

    lock = _slot_locks().finalize_slot(lock_id, sender.id, payment_reference=order_id)
    return success(lock.to_dict(), "Appointment booked successfully")


# --- 4. BATALKAN LOCK (user menutup jendela bayar) ---
@appointment_bp.route('/lock/<int:lock_id>/cancel', methods=['PATCH'])
@role_required(ROLE_USER)
def cancel_lock(sender, lock_id):
    lock = _slot_locks().cancel_lock(lock_id, sender.id)
    return success(lock.to_dict(), "Slot released")


# --- 5. BATALKAN BOOKING YANG SUDAH DIBAYAR ---
@appointment_bp.route('/<int:lock_id>/cancel', methods=['PATCH'])
@role_required(ROLE_USER)
def cancel_booking(sender, lock_id):
    lock = _slot_locks().cancel_booking(lock_id, sender.id)
    return success(lock.to_dict(), "Appointment cancelled")


# --- 6. CEK KETERSEDIAAN SLOT ---
@appointment_bp.route('/availability', methods=['GET'])
@role_required()
def availability(sender):
    doctor_id = _doctor_id(request.args.get('doctor_id'))
    slot_date = request.args.get('slot_date')
    slot_time = request.args.get('slot_time')

    manager = _slot_locks()
    if slot_time:
        return success({
            "doctor_id": doctor_id,
            "slot_date": slot_date,
            "slot_time": slot_time,
            "available": manager.is_slot_available(doctor_id, slot_date, slot_time),
        }, "Slot availability")

    return success({
        "doctor_id": doctor_id,
        "slot_date": slot_date,
        "booked_times": manager.booked_times(doctor_id, slot_date),
    }, "Booked slots for the day")
