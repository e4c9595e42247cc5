from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Notification(db.Model):
    """Operator-facing description of a stock change or a rejected operation."""
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_operator_created", "operator_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)

    event_type = db.Column(db.String(64), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="info")  # success, info, warning, error
    title = db.Column(db.String(128), nullable=False)
    message = db.Column(db.String(512), nullable=False)

    product_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }
