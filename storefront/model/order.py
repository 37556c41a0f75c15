from ..extensions import db
from ..utils.dates import utcnow
from .types import GUID


class Order(db.Model):
    """Placed orders; the discount engine only reads them for customer history."""
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(GUID(), db.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    code = db.Column(db.String(32), unique=True, index=True)  # e.g., "ORD-20251022-0001"
    status = db.Column(db.String(20), default="pending", index=True)

    # Customer snapshot
    customer_name = db.Column(db.String(120))
    customer_phone = db.Column(db.String(50), index=True)
    customer_email = db.Column(db.String(120), index=True)

    total = db.Column(db.Numeric(12, 2))
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
