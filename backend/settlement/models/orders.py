from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    One product line bought by a buyer.

    STATE: status and payment_status are only ever written together by
    services/order_state.transition(); never assign them directly.

    STOCK: stock_state records what this order did to product stock:
    - held: soft hold taken at checkout (reserved_quantity)
    - committed: stock permanently decremented on confirmed payment
    - released: hold returned on cancellation/expiry/rejection
    - none: no stock interaction yet (synthesized orders before commit)
    Commit is only legal from held/none, which is what makes it happen once.

    Orders are never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)

    # Buyer identity is owned by the account system; null for guest checkout
    buyer_id = db.Column(db.Integer, nullable=True, index=True)
    buyer_name = db.Column(db.String(120), nullable=False)
    buyer_email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(32), nullable=False)
    shipping_address = db.Column(db.Text, nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payment_method = db.Column(db.String(32), nullable=False)
    stock_state = db.Column(db.String(16), nullable=False, default="none")

    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    tracking_number = db.Column(db.String(64), nullable=True)
    courier_name = db.Column(db.String(64), nullable=True)
    seller_notes = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("orders", lazy=True))
    seller = db.relationship("Seller", backref=db.backref("orders", lazy=True))
    payment = db.relationship("Payment", backref=db.backref("orders", lazy=True, order_by="Order.id"))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} payment_status={self.payment_status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "seller_id": self.seller_id,
            "payment_id": self.payment_id,
            "reference": self.payment.reference if self.payment else None,
            "buyer_id": self.buyer_id,
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "phone": self.phone,
            "shipping_address": self.shipping_address,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "total_amount_cents": self.total_amount_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "expires_at": to_utc_z(self.expires_at),
            "paid_at": to_utc_z(self.paid_at),
            "tracking_number": self.tracking_number,
            "courier_name": self.courier_name,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderStatusHistory(db.Model):
    """
    Append-only audit trail of order transitions.

    IMMUTABLE: Records are never updated or deleted. One row per transition;
    this is what disputes are resolved against.
    """
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_history_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(32), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    location = db.Column(db.String(64), nullable=True)
    updated_by = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship(
        "Order",
        backref=db.backref("status_history", lazy=True, order_by="OrderStatusHistory.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "description": self.description,
            "location": self.location,
            "updated_by": self.updated_by,
            "created_at": to_utc_z(self.created_at),
        }
