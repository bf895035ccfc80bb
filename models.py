"""SQLAlchemy models for agencies, sales ledger and subscription billing."""

from __future__ import annotations

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Agency
# ---------------------------------------------------------------------------

class Agency(db.Model):
    """A tenant: one real-estate agency with its own ledger and subscription."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(60))
    country_code = db.Column(db.String(2), default="CI")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Sales & installments
# ---------------------------------------------------------------------------

VALID_ASSET_TYPES = {"property_unit", "parcel"}
VALID_PAYMENT_TYPES = {"cash", "installment"}
VALID_SALE_STATUSES = {"in_progress", "complete", "cancelled"}
VALID_INSTALLMENT_STATUSES = {"pending", "paid"}


class Sale(db.Model):
    """A confirmed sale of a property unit or land parcel.

    ``total_installments`` and ``monthly_payment`` are fixed at origination;
    ``paid_installments`` is recomputed from the ledger rows, never edited.
    """
    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(db.Integer, db.ForeignKey("agency.id"), nullable=False, index=True)
    asset_type = db.Column(db.String(30), nullable=False, default="parcel")
    asset_ref = db.Column(db.String(120), nullable=False)
    buyer_name = db.Column(db.String(120), nullable=False)
    buyer_phone = db.Column(db.String(60))
    sale_date = db.Column(db.Date, nullable=False)
    total_price = db.Column(db.Numeric(14, 2, asdecimal=True), nullable=False)
    payment_type = db.Column(db.String(20), nullable=False, default="cash")
    down_payment = db.Column(db.Numeric(14, 2, asdecimal=True), default=0)
    monthly_payment = db.Column(db.Numeric(14, 2, asdecimal=True))
    total_installments = db.Column(db.Integer, nullable=False, default=0)
    paid_installments = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="in_progress")
    notes = db.Column(db.Text)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    agency = db.relationship("Agency")
    installments = db.relationship(
        "Installment",
        backref="sale",
        order_by="Installment.sequence",
        passive_deletes="all",
    )

    __table_args__ = (
        db.CheckConstraint(
            "paid_installments <= total_installments", name="ck_sale_paid_le_total"
        ),
        db.Index("ix_sale_status", "status"),
    )


class Installment(db.Model):
    """One dated échéance of an installment sale.  Never deleted."""
    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(db.Integer, db.ForeignKey("agency.id"), nullable=False, index=True)
    sale_id = db.Column(
        db.Integer, db.ForeignKey("sale.id", ondelete="RESTRICT"), nullable=False
    )
    sequence = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    amount = db.Column(db.Numeric(14, 2, asdecimal=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    paid_date = db.Column(db.Date)
    paid_amount = db.Column(db.Numeric(14, 2, asdecimal=True))
    payment_method = db.Column(db.String(40))
    receipt_number = db.Column(db.String(60))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("sale_id", "sequence", name="uq_installment_sale_sequence"),
        db.Index("ix_installment_status_due", "status", "due_date"),
    )


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

VALID_SUBSCRIPTION_STATUSES = {"trial", "active", "cancelled", "expired"}
VALID_BILLING_CYCLES = {"monthly", "yearly", "lifetime"}
VALID_TRANSACTION_STATUSES = {"pending", "completed", "failed", "refunded"}
TERMINAL_TRANSACTION_STATUSES = {"completed", "failed", "refunded"}


class SubscriptionPlan(db.Model):
    """Available subscription tiers.  Treated as a snapshot; new prices mean a new plan."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    price_monthly = db.Column(db.Numeric(14, 2, asdecimal=True), default=0)
    price_yearly = db.Column(db.Numeric(14, 2, asdecimal=True), default=0)
    price_lifetime = db.Column(db.Numeric(14, 2, asdecimal=True))
    currency = db.Column(db.String(10), default="XOF")
    max_properties = db.Column(db.Integer, default=0)  # 0 = unlimited
    max_tenants = db.Column(db.Integer, default=0)
    max_users = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    def price_for(self, billing_cycle: str):
        """Return the plan price for *billing_cycle*, or ``None`` if not offered."""
        if billing_cycle == "yearly":
            return self.price_yearly
        if billing_cycle == "lifetime":
            return self.price_lifetime
        return self.price_monthly


class AgencySubscription(db.Model):
    """The agency's single subscription row; plan changes update it in place."""
    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(db.Integer, db.ForeignKey("agency.id"), unique=True, nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="trial")
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    starts_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    ends_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    agency = db.relationship("Agency", backref=db.backref("subscription", uselist=False))
    plan = db.relationship("SubscriptionPlan")


class PaymentTransaction(db.Model):
    """One payment attempt.  Immutable once it reaches a terminal status."""
    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(db.Integer, db.ForeignKey("agency.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    subscription_id = db.Column(db.Integer, db.ForeignKey("agency_subscription.id"))
    installment_id = db.Column(db.Integer, db.ForeignKey("installment.id"))
    amount = db.Column(db.Numeric(14, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="XOF")
    provider = db.Column(db.String(30))
    payment_method = db.Column(db.String(40), nullable=False)
    billing_cycle = db.Column(db.String(20))
    status = db.Column(db.String(20), nullable=False, default="pending")
    provider_reference = db.Column(db.String(120))
    provider_status = db.Column(db.String(60))
    customer_phone = db.Column(db.String(60))
    error_message = db.Column(db.Text)
    # "metadata" is reserved on declarative classes
    meta = db.Column("metadata", db.JSON, default=dict)
    completed_at = db.Column(db.DateTime)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    agency = db.relationship("Agency")
    plan = db.relationship("SubscriptionPlan")
    subscription = db.relationship("AgencySubscription")
    installment = db.relationship("Installment")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("provider", "provider_reference", name="uq_transaction_provider_ref"),
        db.Index("ix_transaction_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(db.Integer, db.ForeignKey("agency.id"), index=True)
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
