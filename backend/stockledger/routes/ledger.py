# backend/stockledger/routes/ledger.py
"""
Warehouse ledger and financial settings routes.

The ledger is read-only over HTTP except for payouts; sale and refund
entries are only written by the order lifecycle.
"""
from flask import Blueprint, g, request

from ..decorators import engine_errors, require_actor
from ..exceptions import ValidationError
from ..models import LedgerCategory
from ..validation import coerce_amount_cents, require_fields, require_json_object


ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


@ledger_bp.get("/warehouses/<int:warehouse_id>/balance")
@engine_errors
def balance_route(warehouse_id: int):
    from ..services.ledger_service import get_balance

    return {"warehouse_id": warehouse_id, "balance_cents": get_balance(warehouse_id)}, 200


@ledger_bp.get("/warehouses/<int:warehouse_id>/entries")
@engine_errors
def entries_route(warehouse_id: int):
    category = request.args.get("category")
    if category:
        try:
            category = LedgerCategory(category.strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown ledger category: {category}")

    from ..services.ledger_service import list_entries

    rows = list_entries(
        warehouse_id,
        transaction_id=request.args.get("transaction_id"),
        category=category or None,
        limit=min(request.args.get("limit", default=200, type=int), 1000),
        offset=request.args.get("offset", default=0, type=int),
    )
    return {"entries": [e.to_dict() for e in rows]}, 200


@ledger_bp.post("/warehouses/<int:warehouse_id>/payouts")
@require_actor
@engine_errors
def payout_route(warehouse_id: int):
    """
    Body: {amount_cents, reference}. A repeated reference returns the
    original payout with already_processed=true.
    """
    payload = require_json_object(request.get_json(silent=True))
    require_fields(payload, "amount_cents", "reference")

    from ..services.ledger_service import record_payout

    posting = record_payout(
        warehouse_id,
        coerce_amount_cents(payload.get("amount_cents")),
        str(payload["reference"]),
        actor=g.actor,
    )
    status = 200 if posting.already_processed else 201
    return {
        "already_processed": posting.already_processed,
        "entries": [e.to_dict() for e in posting.entries],
        "balance_cents": posting.balance_after_cents,
    }, status


@ledger_bp.get("/verify")
@engine_errors
def verify_route():
    from ..services.ledger_service import verify_ledger

    reports = verify_ledger(request.args.get("warehouse_id", type=int))
    ok = all(r["ok"] for r in reports)
    return {"ok": ok, "warehouses": reports}, 200


@ledger_bp.get("/settings")
@engine_errors
def get_settings_route():
    from ..services.settings_service import get_financial_settings

    return {"settings": get_financial_settings().to_dict()}, 200


@ledger_bp.put("/settings")
@require_actor
@engine_errors
def update_settings_route():
    payload = require_json_object(request.get_json(silent=True))
    payload.pop("actor", None)
    if not payload:
        raise ValidationError("No settings provided")

    from ..services.settings_service import update_financial_settings

    settings = update_financial_settings(payload, actor=g.actor)
    return {"settings": settings.to_dict()}, 200
