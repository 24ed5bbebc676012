from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Receipt(db.Model):
    """
    Buyer-uploaded proof of payment awaiting seller review.

    PAYMENT TYPES:
    - order_payment: linked to an existing order at upload
    - qr_payment: ad-hoc QR transfer; order_id stays null until approval
      synthesizes an order from the captured buyer/product fields

    STATUS: pending -> approved | rejected, exactly once, and only through
    services/receipt_service.mark_reviewed().
    """
    __tablename__ = "receipts"
    __table_args__ = (
        db.Index("ix_receipts_seller_status", "seller_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, nullable=True)

    payment_type = db.Column(db.String(16), nullable=False, default="order_payment")
    amount_cents = db.Column(db.Integer, nullable=False)

    # QR payment capture (order is synthesized from these on approval)
    buyer_name = db.Column(db.String(120), nullable=True)
    buyer_email = db.Column(db.String(255), nullable=True)
    buyer_phone = db.Column(db.String(32), nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    quantity = db.Column(db.Integer, nullable=True)

    image = db.Column(db.LargeBinary, nullable=False)
    image_content_type = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending, approved, rejected
    seller_notes = db.Column(db.String(500), nullable=True)
    reviewed_via = db.Column(db.String(16), nullable=True)  # dashboard, email_link

    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("receipts", lazy=True))
    seller = db.relationship("Seller", backref=db.backref("receipts", lazy=True))
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Receipt id={self.id} order_id={self.order_id} status={self.status}>"

    def to_dict(self) -> dict:
        # image bytes are served separately
        return {
            "id": self.id,
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "payment_type": self.payment_type,
            "amount_cents": self.amount_cents,
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "buyer_phone": self.buyer_phone,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "image_content_type": self.image_content_type,
            "status": self.status,
            "seller_notes": self.seller_notes,
            "reviewed_via": self.reviewed_via,
            "uploaded_at": to_utc_z(self.uploaded_at),
            "reviewed_at": to_utc_z(self.reviewed_at),
        }
