"""Agency subscription store.

Every agency owns at most one ``AgencySubscription`` row (unique
``agency_id``); plan changes and renewals update that row.  Functions here
flush but never commit: they run inside the checkout or webhook unit of
work that owns the transaction.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import VALID_BILLING_CYCLES, AgencySubscription, SubscriptionPlan
from services.audit import log_action
from services.errors import ValidationError
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def period_end(starts_at: datetime.datetime, billing_cycle: str) -> Optional[datetime.datetime]:
    """End of a billing period started at *starts_at*; ``None`` for lifetime."""
    if billing_cycle == "lifetime":
        return None
    if billing_cycle == "yearly":
        return starts_at + relativedelta(years=1)
    return starts_at + relativedelta(months=1)


def get_agency_subscription(agency_id: int, *, lock: bool = False) -> Optional[AgencySubscription]:
    """Return the agency's subscription row, optionally row-locked."""
    query = AgencySubscription.query.filter_by(agency_id=agency_id)
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def get_active_subscription(agency_id: int, *, lock: bool = False) -> Optional[AgencySubscription]:
    """Return the subscription only if it is currently ``active``."""
    sub = get_agency_subscription(agency_id, lock=lock)
    if sub is None or sub.status != "active":
        return None
    return sub


def get_active_plan(plan_id: int) -> SubscriptionPlan:
    """Load a plan that can still be subscribed to."""
    plan = db.session.get(SubscriptionPlan, plan_id) if plan_id else None
    if plan is None or not plan.is_active:
        raise ValidationError("Forfait non trouvé ou inactif")
    return plan


def upsert_active_subscription(
    agency_id: int,
    plan_id: int,
    billing_cycle: str,
    *,
    starts_at: Optional[datetime.datetime] = None,
    ends_at: Optional[datetime.datetime] = None,
    compute_end: bool = True,
) -> AgencySubscription:
    """Insert or update the agency's row as ``active`` on *plan_id*.

    Two concurrent first-time activations race on the unique ``agency_id``;
    the loser's insert fails inside a savepoint and falls back to updating
    the winner's row.
    """
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"Cycle de facturation invalide: {billing_cycle}")
    starts_at = starts_at or utc_now()
    if compute_end and ends_at is None:
        ends_at = period_end(starts_at, billing_cycle)

    sub = get_agency_subscription(agency_id, lock=True)
    if sub is None:
        try:
            with db.session.begin_nested():
                sub = AgencySubscription(
                    agency_id=agency_id,
                    plan_id=plan_id,
                    billing_cycle=billing_cycle,
                    status="active",
                    starts_at=starts_at,
                    ends_at=ends_at,
                )
                db.session.add(sub)
            logger.info("Activated new subscription for agency %s (plan=%s)", agency_id, plan_id)
            log_action(agency_id, "activate", "subscription", sub.id, f"plan={plan_id} {billing_cycle}")
            return sub
        except IntegrityError:
            logger.warning("Concurrent subscription insert for agency %s, updating instead", agency_id)
            sub = get_agency_subscription(agency_id, lock=True)

    sub.plan_id = plan_id
    sub.billing_cycle = billing_cycle
    sub.status = "active"
    sub.starts_at = starts_at
    sub.ends_at = ends_at
    sub.cancelled_at = None
    db.session.flush()
    logger.info("Activated subscription %s for agency %s (plan=%s)", sub.id, agency_id, plan_id)
    log_action(agency_id, "activate", "subscription", sub.id, f"plan={plan_id} {billing_cycle}")
    return sub


def swap_plan(sub: AgencySubscription, plan_id: int, billing_cycle: str) -> AgencySubscription:
    """Move *sub* to another plan immediately, keeping its current ``ends_at``."""
    previous_plan_id = sub.plan_id
    sub.plan_id = plan_id
    sub.billing_cycle = billing_cycle
    db.session.flush()
    log_action(
        sub.agency_id, "change_plan", "subscription", sub.id,
        f"plan {previous_plan_id} -> {plan_id} ({billing_cycle})",
    )
    logger.info(
        "Swapped subscription %s for agency %s: plan %s -> %s",
        sub.id, sub.agency_id, previous_plan_id, plan_id,
    )
    return sub


def cancel_subscription(agency_id: int) -> Optional[AgencySubscription]:
    """Cancel a subscription (access runs until ``ends_at``)."""
    sub = get_agency_subscription(agency_id, lock=True)
    if sub is None:
        return None
    sub.status = "cancelled"
    sub.cancelled_at = utc_now()
    log_action(agency_id, "cancel", "subscription", sub.id)
    db.session.commit()
    logger.info("Cancelled subscription for agency %s", agency_id)
    return sub


def expire_lapsed_subscriptions(now: Optional[datetime.datetime] = None) -> int:
    """Flip active/cancelled subscriptions past ``ends_at`` to ``expired``.

    Meant for a scheduled CLI run; reads never depend on it having run.
    """
    now = now or utc_now()
    count = 0
    for sub in AgencySubscription.query.filter(
        AgencySubscription.status.in_(("active", "cancelled", "trial")),
        AgencySubscription.ends_at.isnot(None),
    ).all():
        if as_utc(sub.ends_at) < now:
            sub.status = "expired"
            count += 1
            logger.info("Subscription expired for agency %s", sub.agency_id)
    db.session.commit()
    return count


def get_plan_limits(agency_id: int) -> dict:
    """Return the current plan limits for an agency (0 = unlimited)."""
    sub = get_active_subscription(agency_id)
    if not sub:
        return {"max_properties": 0, "max_tenants": 0, "max_users": 0}
    plan = sub.plan
    return {
        "max_properties": plan.max_properties,
        "max_tenants": plan.max_tenants,
        "max_users": plan.max_users,
    }
