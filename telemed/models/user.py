from telemed.utils.clock import utcnow

from telemed.extensions import db

ROLE_USER = "user"
ROLE_DOCTOR = "doctor"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_DOCTOR, ROLE_ADMIN)


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    full_name = db.Column(db.String(100), nullable=True)

    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)  # 'user', 'doctor', 'admin'
    created_at = db.Column(db.DateTime, default=utcnow)

    # Kolom ini hanya terisi kalau usernya dokter
    specialization = db.Column(db.String(100), nullable=True)
    consultation_price = db.Column(db.Integer, default=0)  # Harga dalam Rupiah
    is_online = db.Column(db.Boolean, default=False)

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
