# --- storefront/model/store.py ---
from ..extensions import db
from ..utils.dates import utcnow, iso
from .types import GUID, new_id


class Store(db.Model):
    __tablename__ = "stores"

    id = db.Column(GUID(), primary_key=True, default=new_id)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(180), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    owner = db.relationship("User", back_populates="stores")

    def as_dict(self):
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "created_at": iso(self.created_at),
        }
