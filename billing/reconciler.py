"""Turn processor payment notifications into paid invoices.

``PaymentReconciler.process_payment`` never raises: every outcome, including
failures, is written to the ``reconciliations`` collection and returned as a
``ProcessingResult``.
"""
import logging
import time
from datetime import datetime, timezone

from pymongo.errors import DuplicateKeyError, PyMongoError

from billing.db import ACCOUNTS, INVOICES, PAYMENTS, RECONCILIATIONS, to_object_id
from billing.errors import MissingTenantContext
from billing.matching import PatientMatcher, split_name
from billing.models import (
    Account,
    Invoice,
    InvoiceMetadata,
    InvoiceStatus,
    LineItem,
    MatchResult,
    Payment,
    PaymentEvent,
    PaymentStatus,
    ProcessingResult,
    ReconciliationRecord,
    ReconciliationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TENANT_METADATA_KEYS = ("clinic_id", "clinicId")


def _ref_id(value):
    """Processor objects reference each other either by id string or expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _from_epoch(seconds):
    if not seconds:
        return utcnow()
    return datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)


def extract_from_charge(charge):
    billing = charge.get("billing_details") or {}
    return PaymentEvent(
        customer_id=_ref_id(charge.get("customer")),
        email=billing.get("email"),
        name=billing.get("name"),
        phone=billing.get("phone"),
        amount=charge.get("amount") or 0,
        currency=charge.get("currency") or "usd",
        description=charge.get("description"),
        payment_intent_id=_ref_id(charge.get("payment_intent")),
        charge_id=charge.get("id"),
        external_invoice_id=_ref_id(charge.get("invoice")),
        metadata=charge.get("metadata") or {},
        paid_at=_from_epoch(charge.get("created")),
    )


def extract_from_payment_intent(intent):
    # Billing details only exist when latest_charge was expanded
    latest_charge = intent.get("latest_charge")
    charge = latest_charge if isinstance(latest_charge, dict) else {}
    billing = charge.get("billing_details") or {}
    invoice = intent.get("invoice")
    return PaymentEvent(
        customer_id=_ref_id(intent.get("customer")),
        email=billing.get("email"),
        name=billing.get("name"),
        phone=billing.get("phone"),
        amount=intent.get("amount") or 0,
        currency=intent.get("currency") or "usd",
        description=intent.get("description"),
        payment_intent_id=intent.get("id"),
        charge_id=_ref_id(latest_charge),
        external_invoice_id=invoice if isinstance(invoice, str) else None,
        metadata=intent.get("metadata") or {},
        paid_at=_from_epoch(intent.get("created")),
    )


def extract_from_checkout_session(session):
    details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    return PaymentEvent(
        customer_id=_ref_id(session.get("customer")),
        email=details.get("email"),
        name=details.get("name"),
        phone=details.get("phone"),
        amount=session.get("amount_total") or 0,
        currency=session.get("currency") or "usd",
        description=metadata.get("description") or "Checkout payment",
        payment_intent_id=_ref_id(session.get("payment_intent")),
        charge_id=None,
        external_invoice_id=_ref_id(session.get("invoice")),
        metadata=metadata,
        paid_at=_from_epoch(session.get("created")),
    )


EXTRACTORS = {
    "charge.succeeded": extract_from_charge,
    "payment_intent.succeeded": extract_from_payment_intent,
    "checkout.session.completed": extract_from_checkout_session,
}


class PaymentReconciler:
    def __init__(self, db, matcher=None, default_tenant_id=None):
        self.db = db
        self.matcher = matcher or PatientMatcher(db)
        self.default_tenant_id = default_tenant_id

    def process_payment(self, event, event_id=None, event_type=None):
        match = MatchResult()
        try:
            if event_id:
                existing = ReconciliationRecord.from_doc(
                    self.db[RECONCILIATIONS].find_one({"event_id": event_id}))
                if existing:
                    logger.debug("Event %s already processed (%s)", event_id, existing.status)
                    return self._replay(existing)

            tenant_id = self._tenant_from_metadata(event)
            match = self.matcher.match_account(event, tenant_id)

            account = match.account
            account_created = False
            if account is None:
                target_tenant = tenant_id or self.default_tenant_id
                if not target_tenant:
                    raise MissingTenantContext("No clinic ID available for patient creation")
                account = self._create_account(event, target_tenant)
                account_created = True
            elif not account.external_customer_id and event.customer_id:
                self._link_customer_id(account, event.customer_id)

            invoice, payment_id = self._create_paid_invoice(account, event)

            winner = self._record(event, event_id, event_type,
                                  status=ReconciliationStatus.CREATED if account_created else ReconciliationStatus.MATCHED,
                                  matched_by=match.matched_by,
                                  match_confidence=match.confidence,
                                  account_id=account.id,
                                  invoice_id=invoice.id,
                                  account_created=account_created,
                                  tenant_id=account.tenant_id)
            if winner:
                self._discard(winner, invoice, payment_id, account if account_created else None)
                return self._replay(winner)

            return ProcessingResult(success=True, account=account, invoice=invoice,
                                    match_result=match, account_created=account_created)

        except MissingTenantContext as e:
            logger.error("Cannot create account for payment_intent=%s: %s", event.payment_intent_id, e)
            winner = self._record(event, event_id, event_type,
                                  status=ReconciliationStatus.FAILED, error_message=str(e))
            if winner:
                return self._replay(winner)
            return ProcessingResult(success=False, match_result=match, error=str(e))

        except Exception as e:
            logger.exception("Error processing payment_intent=%s charge=%s",
                             event.payment_intent_id, event.charge_id)
            winner = self._record(event, event_id, event_type,
                                  status=ReconciliationStatus.FAILED, error_message=str(e) or type(e).__name__)
            if winner:
                return self._replay(winner)
            return ProcessingResult(success=False, error=str(e) or type(e).__name__)

    def _discard(self, winner, invoice, payment_id, account):
        """Remove rows this delivery wrote after a concurrent delivery of the same event won."""
        logger.info("Event %s was processed concurrently, keeping invoice %s",
                    winner.event_id, winner.invoice_id)
        if payment_id is not None and invoice.id != winner.invoice_id:
            self.db[PAYMENTS].delete_one({"_id": payment_id})
            self.db[INVOICES].delete_one({"_id": to_object_id(invoice.id, "Invoice")})
        if account is not None and account.id != winner.account_id:
            self.db[ACCOUNTS].delete_one({"_id": to_object_id(account.id, "Account")})

    def _replay(self, record):
        account = None
        invoice = None
        if record.account_id:
            account = Account.from_doc(
                self.db[ACCOUNTS].find_one({"_id": to_object_id(record.account_id, "Account")}))
        if record.invoice_id:
            invoice = Invoice.from_doc(
                self.db[INVOICES].find_one({"_id": to_object_id(record.invoice_id, "Invoice")}))
        failed = record.status == ReconciliationStatus.FAILED
        return ProcessingResult(
            success=not failed,
            account=account,
            invoice=invoice,
            match_result=MatchResult(account=account, matched_by=record.matched_by,
                                     confidence=record.match_confidence),
            account_created=record.account_created,
            duplicate=True,
            error=record.error_message if failed else None,
        )

    def _tenant_from_metadata(self, event):
        for key in TENANT_METADATA_KEYS:
            value = (event.metadata.get(key) or "").strip()
            if value:
                return value
        return None

    def _create_account(self, event, tenant_id):
        if event.name:
            first_name, last_name = split_name(event.name)
        else:
            first_name, last_name = "Unknown", "Customer"

        placeholder_key = event.customer_id or str(int(time.time() * 1000))
        account = Account(
            tenant_id=tenant_id,
            first_name=first_name or "Unknown",
            last_name=last_name or "Customer",
            email=event.email or f"stripe-{placeholder_key}@placeholder.local",
            phone=event.phone or "",
            external_customer_id=event.customer_id,
            source="stripe",
            source_metadata={
                "external_customer_id": event.customer_id,
                "first_payment_id": event.payment_intent_id or event.charge_id,
                "created_from": "payment_webhook",
                "timestamp": utcnow().isoformat(),
            },
            notes="Auto-created from Stripe payment. Please update patient details.",
        )
        result = self.db[ACCOUNTS].insert_one(account.to_doc())
        account.id = str(result.inserted_id)
        logger.info("Created account %s from payment (customer=%s)", account.id, event.customer_id)
        return account

    def _link_customer_id(self, account, customer_id):
        try:
            self.db[ACCOUNTS].update_one(
                {"_id": to_object_id(account.id, "Account"), "external_customer_id": {"$exists": False}},
                {"$set": {"external_customer_id": customer_id}},
            )
        except DuplicateKeyError:
            # Another account already owns this customer id; leave both alone
            logger.warning("Customer id %s already linked to another account", customer_id)
            return
        account.external_customer_id = customer_id
        logger.debug("Linked customer id %s to account %s", customer_id, account.id)

    def _create_paid_invoice(self, account, event):
        if event.external_invoice_id:
            existing = self.db[INVOICES].find_one({"external_invoice_id": event.external_invoice_id})
            if existing:
                logger.debug("Invoice already exists for processor invoice %s", event.external_invoice_id)
                return Invoice.from_doc(existing), None

        if event.payment_intent_id:
            payment = self.db[PAYMENTS].find_one(
                {"payment_intent_id": event.payment_intent_id, "invoice_id": {"$exists": True}})
            if payment:
                existing = self.db[INVOICES].find_one({"_id": to_object_id(payment["invoice_id"], "Invoice")})
                if existing:
                    logger.debug("Invoice already exists for payment intent %s", event.payment_intent_id)
                    return Invoice.from_doc(existing), None

        description = event.description or "Payment received via Stripe"
        invoice = Invoice(
            account_id=account.id,
            tenant_id=account.tenant_id,
            external_invoice_id=event.external_invoice_id,
            description=description,
            amount=event.amount,
            amount_paid=event.amount,
            amount_due=0,
            currency=event.currency or "usd",
            status=InvoiceStatus.PAID,
            paid_at=event.paid_at,
            line_items=[LineItem(description=description, quantity=1, unit_price=event.amount)],
            metadata=InvoiceMetadata(
                source="stripe_webhook",
                payment_intent_id=event.payment_intent_id,
                charge_id=event.charge_id,
                processor_metadata=event.metadata,
            ),
        )
        result = self.db[INVOICES].insert_one(invoice.to_doc())
        invoice.id = str(result.inserted_id)

        payment = Payment(
            account_id=account.id,
            tenant_id=account.tenant_id,
            invoice_id=invoice.id,
            amount=event.amount,
            currency=event.currency or "usd",
            status=PaymentStatus.SUCCEEDED,
            payment_method="stripe",
            payment_intent_id=event.payment_intent_id,
            charge_id=event.charge_id,
            paid_at=event.paid_at,
        )
        payment_id = self.db[PAYMENTS].insert_one(payment.to_doc()).inserted_id

        logger.info("Created paid invoice %s for account %s (amount=%s, payment_intent=%s)",
                    invoice.id, account.id, event.amount, event.payment_intent_id)
        return invoice, payment_id

    def _record(self, event, event_id, event_type, **outcome):
        """Write the audit row. Runs after the primary writes and never raises.

        Returns the already stored record when a concurrent delivery of the
        same event wrote it first, otherwise None.
        """
        record = ReconciliationRecord(
            event_id=event_id or f"manual_{int(time.time() * 1000)}",
            event_type=event_type or "manual_processing",
            payment_intent_id=event.payment_intent_id,
            charge_id=event.charge_id,
            external_invoice_id=event.external_invoice_id,
            customer_id=event.customer_id,
            amount=event.amount,
            currency=event.currency,
            description=event.description,
            customer_email=event.email,
            customer_name=event.name,
            customer_phone=event.phone,
            metadata=event.metadata,
            **outcome,
        )
        try:
            self.db[RECONCILIATIONS].insert_one(record.to_doc())
        except DuplicateKeyError:
            logger.info("Reconciliation for event %s already recorded by a concurrent delivery", record.event_id)
            try:
                return ReconciliationRecord.from_doc(
                    self.db[RECONCILIATIONS].find_one({"event_id": record.event_id}))
            except PyMongoError:
                logger.exception("Failed to load reconciliation record for event %s", record.event_id)
        except PyMongoError:
            logger.exception("Failed to write reconciliation record for payment_intent=%s",
                             event.payment_intent_id)
        return None
