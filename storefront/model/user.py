# --- storefront/model/user.py ---

from ..extensions import db
from ..utils.dates import utcnow


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(180), nullable=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False, default="")
    role = db.Column(db.String(50), nullable=False, default="user", index=True)  # roles: user, admin
    created_at = db.Column(db.DateTime, default=utcnow)

    stores = db.relationship("Store", back_populates="owner", lazy="selectin")

    def as_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
        }
