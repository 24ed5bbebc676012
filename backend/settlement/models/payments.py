from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Payment(db.Model):
    """
    Money owed for one checkout, settled by exactly one gateway event or
    one receipt approval.

    IDEMPOTENCY: (payment_method, external_id) is the gateway's idempotency
    key. reference is the buyer-facing unique string and also matches
    callbacks that only echo the merchant reference.

    STATUS: pending -> completed | failed, exactly once. needs_review is
    raised when a contradictory event arrives after the terminal state.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("payment_method", "external_id", name="uq_payments_method_external_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(64), nullable=False, unique=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="MYR")
    payment_method = db.Column(db.String(32), nullable=False, index=True)

    external_id = db.Column(db.String(128), nullable=True, index=True)
    payment_url = db.Column(db.String(500), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending, completed, failed
    paid_amount_cents = db.Column(db.Integer, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_via = db.Column(db.String(32), nullable=True)  # gateway name, receipt, expiry, seller

    needs_review = db.Column(db.Boolean, nullable=False, default=False, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Payment id={self.id} reference={self.reference!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "external_id": self.external_id,
            "payment_url": self.payment_url,
            "status": self.status,
            "paid_amount_cents": self.paid_amount_cents,
            "paid_at": to_utc_z(self.paid_at),
            "settled_via": self.settled_via,
            "needs_review": self.needs_review,
            "order_ids": [o.id for o in self.orders],
            "created_at": to_utc_z(self.created_at),
        }


class PaymentAnomaly(db.Model):
    """
    Operator queue of reconciliation anomalies.

    KINDS:
    - conflicting_outcome: terminal payment received the opposite outcome
    - amount_mismatch: gateway reported a paid amount different from the amount due
    - late_payment: money arrived for a payment already failed by expiry/cancellation

    Append-only apart from the resolution fields, set by an operator through
    ledger_service.resolve_anomaly().
    """
    __tablename__ = "payment_anomalies"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    kind = db.Column(db.String(32), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=True)
    external_id = db.Column(db.String(128), nullable=True)
    reported_outcome = db.Column(db.String(16), nullable=True)
    reported_amount_cents = db.Column(db.Integer, nullable=True)
    detail = db.Column(db.String(500), nullable=False)

    resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", backref=db.backref("anomalies", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "kind": self.kind,
            "provider": self.provider,
            "external_id": self.external_id,
            "reported_outcome": self.reported_outcome,
            "reported_amount_cents": self.reported_amount_cents,
            "detail": self.detail,
            "resolved": self.resolved,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolution_note": self.resolution_note,
            "created_at": to_utc_z(self.created_at),
        }
