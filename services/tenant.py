"""Agency context and data isolation services."""

from __future__ import annotations

from typing import Optional

from flask import abort, g, request

from extensions import db
from models import Agency
from utils import safe_int

AGENCY_HEADER = "X-Agency-Id"


def load_current_agency() -> None:
    """Set ``g.current_agency`` from the ``X-Agency-Id`` header.

    Authentication sits in front of this service; the header is trusted.
    """
    agency_id = safe_int(request.headers.get(AGENCY_HEADER))
    agency = db.session.get(Agency, agency_id) if agency_id else None
    if agency is not None and not agency.is_active:
        agency = None
    g.current_agency = agency


def get_current_agency() -> Optional[Agency]:
    """Return the active Agency object from ``g``, or None."""
    return getattr(g, "current_agency", None)


def require_agency() -> int:
    """Return the current agency id or abort with 403."""
    agency = get_current_agency()
    if agency is None:
        abort(403, description="Agence non identifiée.")
    return agency.id


def agency_query(model):
    """Return a query on *model* filtered to the current agency.

    Usage::

        sales = agency_query(Sale).filter_by(status="in_progress").all()
    """
    return model.query.filter_by(agency_id=require_agency())


def agency_get_or_404(model, obj_id):
    """Fetch a single object by PK, verifying it belongs to the current agency."""
    agency_id = require_agency()
    obj = db.session.get(model, obj_id)
    if obj is None or getattr(obj, "agency_id", agency_id) != agency_id:
        abort(404)
    return obj
