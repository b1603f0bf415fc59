import json
import logging
from datetime import datetime

import stripe
from flask import Blueprint, Response, current_app, jsonify, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from billing.errors import BillingError
from billing.invoices import InvoiceManager
from billing.models import (
    InvoiceFilters,
    RecordPaymentInput,
    RefundInput,
    as_naive_utc,
)
from billing.reconciler import EXTRACTORS
from billing.reports import reconciliation_frame, to_csv_bytes

logger = logging.getLogger(__name__)

bp = Blueprint("billing", __name__)


def _services():
    return current_app.extensions["billing"]


def _manager():
    services = _services()
    return InvoiceManager(
        services["db"],
        processor=services["processor"],
        email_sender=services["email_sender"],
        sms_sender=services["sms_sender"],
        tenant_id=request.headers.get("X-Clinic-Id") or None,
        config=services["config"],
    )


def _body():
    return request.get_json(silent=True) or {}


def _dump(model):
    return model.model_dump(mode="json")


@bp.errorhandler(BillingError)
def handle_billing_error(e):
    return jsonify({"error": str(e)}), e.status_code


@bp.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({"error": "Invalid request", "details": json.loads(e.json(include_url=False))}), 400


@bp.errorhandler(ValueError)
def handle_value_error(e):
    return jsonify({"error": str(e)}), 400


@bp.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": str(e)}), 500


# Route to receive processor payment notifications
@bp.route("/webhooks/stripe", methods=["POST"])
def stripe_webhook():
    config = _services()["config"]
    payload = request.get_data(as_text=True)

    try:
        if config.STRIPE_WEBHOOK_SECRET:
            stripe.WebhookSignature.verify_header(
                payload, request.headers.get("Stripe-Signature", ""), config.STRIPE_WEBHOOK_SECRET)
        event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        return jsonify({"error": "Invalid signature"}), 400
    except ValueError as e:
        return jsonify({"error": f"Invalid payload: {e}"}), 400

    event_type = event.get("type")
    extractor = EXTRACTORS.get(event_type)
    if extractor is None:
        logger.info("Ignoring webhook event type %s", event_type)
        return jsonify({"received": True, "processed": False, "ignored": True}), 200

    try:
        payment_event = extractor(event["data"]["object"])
    except (KeyError, TypeError, ValidationError) as e:
        logger.error("Could not read %s event %s: %s", event_type, event.get("id"), e)
        return jsonify({"received": True, "processed": False, "error": str(e)}), 200

    result = _services()["reconciler"].process_payment(payment_event, event.get("id"), event_type)
    return jsonify({
        "received": True,
        "processed": result.success,
        "duplicate": result.duplicate,
        "account_created": result.account_created,
        "account_id": result.account.id if result.account else None,
        "invoice_id": result.invoice.id if result.invoice else None,
        "matched_by": result.match_result.matched_by,
        "error": result.error,
    }), 200


# --- Invoices ------------------------------------------------------------------

@bp.route("/invoices", methods=["POST"])
def create_invoice():
    invoice = _manager().create_invoice(_body())
    return jsonify({"invoice": _dump(invoice)}), 201


@bp.route("/invoices/drafts", methods=["POST"])
def create_draft_invoice():
    invoice = _manager().create_draft_invoice(_body())
    return jsonify({"invoice": _dump(invoice)}), 201


# Route to list invoices with filtering and paging
@bp.route("/invoices", methods=["GET"])
def list_invoices():
    args = request.args
    filters = InvoiceFilters(
        account_id=args.get("account_id"),
        status=args.getlist("status"),
        from_date=args.get("from_date"),
        to_date=args.get("to_date"),
        min_amount=args.get("min_amount"),
        max_amount=args.get("max_amount"),
        overdue=args.get("overdue", "false").lower() == "true",
        page=args.get("page", 1),
        limit=args.get("limit", 20),
        order_by=args.get("order_by", "created_at"),
        order_dir=args.get("order_dir", "desc"),
    )
    page = _manager().list_invoices(filters)
    return jsonify({
        "invoices": [_dump(invoice) for invoice in page["invoices"]],
        "pagination": {
            "current_page": page["page"],
            "total_pages": page["total_pages"],
            "total_records": page["total"],
        },
    })


@bp.route("/invoices/<invoice_id>", methods=["GET"])
def get_invoice(invoice_id):
    manager = _manager()
    invoice = manager.get_invoice(invoice_id)
    payments = manager.list_payments(invoice_id)
    return jsonify({"invoice": _dump(invoice), "payments": [_dump(p) for p in payments]})


@bp.route("/invoices/<invoice_id>", methods=["PATCH"])
def update_invoice(invoice_id):
    invoice = _manager().update_invoice(invoice_id, _body())
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/finalize", methods=["POST"])
def finalize_invoice(invoice_id):
    invoice = _manager().finalize_invoice(invoice_id)
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/items", methods=["POST"])
def add_line_items(invoice_id):
    items = _body().get("items") or []
    if not items:
        return jsonify({"error": "No line items provided"}), 400
    invoice = _manager().add_line_items(invoice_id, items)
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/items/<int:index>", methods=["DELETE"])
def remove_line_item(invoice_id, index):
    invoice = _manager().remove_line_item(invoice_id, index)
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/send", methods=["POST"])
def send_invoice(invoice_id):
    data = _body()
    result = _manager().send_invoice(invoice_id, channel=data.get("channel", "email"),
                                     custom_message=data.get("message"))
    return jsonify(_dump(result)), 200 if result.success else 502


@bp.route("/invoices/<invoice_id>/void", methods=["POST"])
def void_invoice(invoice_id):
    invoice = _manager().void_invoice(invoice_id, reason=_body().get("reason"))
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/uncollectible", methods=["POST"])
def mark_uncollectible(invoice_id):
    invoice = _manager().mark_uncollectible(invoice_id, reason=_body().get("reason"))
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/payments", methods=["POST"])
def record_payment(invoice_id):
    data = RecordPaymentInput.model_validate(_body())
    result = _manager().record_payment(invoice_id, data.amount, method=data.method,
                                       payment_intent_id=data.payment_intent_id, notes=data.notes)
    return jsonify(_dump(result)), 201


@bp.route("/invoices/<invoice_id>/payment-plan", methods=["POST"])
def create_payment_plan(invoice_id):
    invoice = _manager().create_payment_plan(invoice_id, _body())
    return jsonify({"invoice": _dump(invoice), "payment_plan": _dump(invoice.metadata.payment_plan)}), 201


@bp.route("/invoices/<invoice_id>/credits", methods=["POST"])
def apply_credit(invoice_id):
    data = _body()
    if "amount" not in data:
        return jsonify({"error": "amount is required"}), 400
    invoice = _manager().apply_credit(invoice_id, int(data["amount"]), description=data.get("description"))
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/refunds", methods=["POST"])
def issue_refund(invoice_id):
    data = RefundInput.model_validate(_body())
    invoice = _manager().issue_refund(invoice_id, amount=data.amount, reason=data.reason,
                                      refund_to_payment_method=data.refund_to_payment_method)
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/invoices/<invoice_id>/reminders", methods=["POST"])
def schedule_reminders(invoice_id):
    reminders = _body().get("reminders") or []
    invoice = _manager().schedule_reminders(invoice_id, reminders)
    return jsonify({"invoice": _dump(invoice)})


@bp.route("/reminders/run", methods=["POST"])
def run_reminders():
    run = _manager().process_due_reminders()
    return jsonify(_dump(run))


@bp.route("/accounts/<account_id>/invoice-summary", methods=["GET"])
def account_invoice_summary(account_id):
    summary = _manager().account_invoice_summary(account_id)
    return jsonify(_dump(summary))


# --- Reports -------------------------------------------------------------------

def _date_arg(name):
    value = request.args.get(name)
    if not value:
        return None
    return as_naive_utc(datetime.fromisoformat(value))


@bp.route("/reports/reconciliations.csv", methods=["GET"])
def reconciliations_report():
    tenant_id = request.headers.get("X-Clinic-Id") or request.args.get("clinic_id")
    df = reconciliation_frame(_services()["db"], tenant_id, _date_arg("start"), _date_arg("end"))
    return Response(
        to_csv_bytes(df),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=reconciliations.csv"},
    )
