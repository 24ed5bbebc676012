from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Seller(db.Model):
    """
    Marketplace seller.

    Only the fields the reconciliation core needs: a delivery address for
    notifications and the pending-receipt reminder preference.

    last_reminder_sent_at is the persisted throttle marker for the reminder
    sweep; it survives restarts so a redeploy never triggers a reminder storm.
    """
    __tablename__ = "sellers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)

    reminder_frequency = db.Column(db.String(8), nullable=False, default="30m")  # off, 30s, 30m, 1h
    last_reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Seller id={self.id} email={self.email!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "reminder_frequency": self.reminder_frequency,
            "last_reminder_sent_at": to_utc_z(self.last_reminder_sent_at),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Sellable product with a true stock count and a soft-hold counter.

    STOCK MODEL:
    - quantity is the true, committed stock on hand.
    - reserved_quantity is the sum of soft holds taken by unpaid orders.
    - available = quantity - reserved_quantity; checkout may only hold what is available.
    - quantity is decremented only when payment is confirmed.

    version_id makes concurrent writers on the same row detectable
    (StaleDataError) even on databases that ignore SELECT ... FOR UPDATE.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity_nonnegative"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_products_reserved_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    seller = db.relationship("Seller", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} quantity={self.quantity} reserved={self.reserved_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "shipping_cents": self.shipping_cents,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
