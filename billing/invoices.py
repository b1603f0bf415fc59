"""Invoice lifecycle: DRAFT -> OPEN -> PAID / VOID / UNCOLLECTIBLE.

The local invoice document is authoritative. When a payment processor is
configured it is kept in step on a best-effort basis: processor failures are
logged and the local transition still happens. Money movements
(``record_payment``, ``apply_credit``, ``issue_refund``) use a conditional
update on ``amount_paid`` so concurrent writers cannot lose each other's
changes.
"""
import logging
from datetime import timedelta

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from billing.calculations import build_payment_schedule, calculate_summary, line_item_total
from billing.config import Config
from billing.db import ACCOUNTS, INVOICES, PAYMENTS, next_sequence, to_object_id
from billing.errors import ConcurrentUpdate, ExternalServiceFailure, InvalidStateTransition, NotFound
from billing.models import (
    TERMINAL_STATUSES,
    Account,
    AccountInvoiceSummary,
    CreateInvoiceOptions,
    CreditEntry,
    DeliveryResult,
    Invoice,
    InvoiceFilters,
    InvoiceMetadata,
    InvoiceStatus,
    LineItem,
    Payment,
    PaymentHistoryEntry,
    PaymentPlan,
    PaymentPlanState,
    PaymentRecorded,
    PaymentStatus,
    RefundEntry,
    Reminder,
    ReminderRun,
    SendResult,
    UpdateInvoiceOptions,
    utcnow,
)
from billing.notifications import format_money, format_phone_number, render_invoice_email

logger = logging.getLogger(__name__)

DRAFT = InvoiceStatus.DRAFT.value
OPEN = InvoiceStatus.OPEN.value
PAID = InvoiceStatus.PAID.value
VOID = InvoiceStatus.VOID.value
UNCOLLECTIBLE = InvoiceStatus.UNCOLLECTIBLE.value

REMINDER_MESSAGES = {
    "before_due": "Payment reminder: Your invoice is due soon",
    "on_due": "Payment reminder: Your invoice is due today",
    "after_due": "Payment reminder: Your invoice is overdue",
}


def _dump(model):
    return model.model_dump(exclude_none=True)


def _check_metadata_keys(metadata):
    for key in metadata:
        if not key or "." in key or key.startswith("$"):
            raise ValueError(f"Invalid metadata key: {key!r}")


class InvoiceManager:
    MAX_RETRIES = 5

    def __init__(self, db, processor=None, email_sender=None, sms_sender=None, tenant_id=None, config=None):
        self.invoices = db[INVOICES]
        self.accounts = db[ACCOUNTS]
        self.payments = db[PAYMENTS]
        self.db = db
        self.processor = processor
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.tenant_id = tenant_id
        self.config = config or Config()

    # ------------------------------------------------------------------
    # Loading and persistence helpers
    # ------------------------------------------------------------------

    def _query(self, invoice_id):
        query = {"_id": to_object_id(invoice_id, "Invoice")}
        if self.tenant_id:
            query["tenant_id"] = self.tenant_id
        return query

    def _load(self, invoice_id):
        invoice = Invoice.from_doc(self.invoices.find_one(self._query(invoice_id)))
        if invoice is None:
            raise NotFound("Invoice not found")
        return invoice

    def _load_account(self, account_id):
        account = Account.from_doc(self.accounts.find_one({"_id": to_object_id(account_id, "Account")}))
        if account is None:
            raise NotFound("Account not found")
        return account

    def _apply(self, invoice, update, **expected):
        """Update ``invoice`` only if it still matches ``expected``; return the new state."""
        query = self._query(invoice.id)
        query.update(expected)
        update.setdefault("$set", {})["updated_at"] = utcnow()
        doc = self.invoices.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            raise ConcurrentUpdate("Invoice changed while it was being updated")
        return Invoice.from_doc(doc)

    def generate_invoice_number(self, tenant_id=None, now=None):
        """``INV-YYYYMM-NNNN`` from an atomic per tenant-month counter."""
        now = now or utcnow()
        period = now.strftime("%Y%m")
        sequence = next_sequence(self.db, f"invoice:{tenant_id or 'all'}:{period}")
        return f"INV-{period}-{sequence:04d}"

    # ------------------------------------------------------------------
    # Processor mirroring
    # ------------------------------------------------------------------

    def _customer_for(self, account):
        if account.external_customer_id:
            return account.external_customer_id
        customer_id = self.processor.create_customer(account)
        self.accounts.update_one(
            {"_id": to_object_id(account.id, "Account"), "external_customer_id": {"$exists": False}},
            {"$set": {"external_customer_id": customer_id}},
        )
        account.external_customer_id = customer_id
        return customer_id

    def _mirror(self, invoice, account, collection_method="send_invoice", auto_send=False, auto_charge=False):
        """Create and finalize the invoice at the processor. Returns its refs, or None on failure."""
        days_until_due = self.config.INVOICE_DUE_DAYS
        if invoice.due_date:
            days_until_due = max(1, (invoice.due_date - utcnow()).days)
        try:
            customer_id = self._customer_for(account)
            remote = self.processor.create_invoice(
                customer_id,
                description=invoice.description,
                collection_method=collection_method,
                days_until_due=days_until_due,
                footer=invoice.metadata.footer,
                custom_fields=invoice.metadata.custom_fields,
                metadata={
                    "account_id": account.id,
                    "tenant_id": invoice.tenant_id or "",
                    "order_id": invoice.order_id or "",
                    "invoice_number": invoice.invoice_number or "",
                    **invoice.metadata.extra,
                },
            )
            for item in invoice.line_items:
                description = item.description
                if item.quantity > 1:
                    description = f"{item.description} (x{item.quantity})"
                self.processor.add_invoice_item(
                    customer_id, remote["id"],
                    description=description,
                    amount=line_item_total(item),
                    currency=invoice.currency,
                    metadata=item.metadata,
                )
            discount = invoice.metadata.discount
            if discount and discount.value > 0:
                coupon_id = self.processor.create_coupon(discount, invoice.currency)
                self.processor.apply_coupon(remote["id"], coupon_id)
            finalized = self.processor.finalize_invoice(remote["id"])
        except ExternalServiceFailure as e:
            logger.error("Processor invoice creation failed for account %s: %s", account.id, e)
            return None

        if auto_send:
            try:
                self.processor.send_invoice(finalized["id"])
            except ExternalServiceFailure as e:
                logger.warning("Processor send failed for %s: %s", finalized["id"], e)
        if auto_charge:
            try:
                self.processor.pay_invoice(finalized["id"])
            except ExternalServiceFailure as e:
                logger.warning("Auto-charge failed for %s: %s", finalized["id"], e)
        return finalized

    @staticmethod
    def _external_fields(refs):
        return {
            "external_invoice_id": refs["id"],
            "external_invoice_number": refs.get("number"),
            "external_invoice_url": refs.get("hosted_invoice_url"),
            "external_pdf_url": refs.get("invoice_pdf"),
        }

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _build(self, options):
        if isinstance(options, dict):
            options = CreateInvoiceOptions.model_validate(options)
        _check_metadata_keys(options.metadata)
        account = self._load_account(options.account_id)
        summary = calculate_summary(options.line_items, options.discount, options.taxes)
        tenant_id = options.tenant_id or self.tenant_id or account.tenant_id

        due_date = options.due_date
        if due_date is None:
            days = options.due_in_days if options.due_in_days is not None else self.config.INVOICE_DUE_DAYS
            due_date = utcnow() + timedelta(days=days)

        invoice = Invoice(
            account_id=account.id,
            tenant_id=tenant_id,
            order_id=options.order_id,
            invoice_number=options.invoice_number or self.generate_invoice_number(tenant_id),
            description=options.description,
            amount=summary.total,
            amount_paid=0,
            amount_due=summary.amount_due,
            currency=self.config.CURRENCY,
            status=InvoiceStatus.DRAFT,
            due_date=due_date,
            line_items=options.line_items,
            metadata=InvoiceMetadata(
                memo=options.memo,
                footer=options.footer,
                po_number=options.po_number,
                payment_terms=options.payment_terms,
                custom_fields=options.custom_fields,
                discount=options.discount,
                taxes=options.taxes,
                summary=summary,
                extra=options.metadata,
            ),
        )
        return options, account, invoice

    def _insert(self, invoice):
        result = self.invoices.insert_one(invoice.to_doc())
        invoice.id = str(result.inserted_id)
        return invoice

    def create_invoice(self, options):
        options, account, invoice = self._build(options)

        if self.processor:
            refs = self._mirror(invoice, account, options.collection_method,
                                auto_send=options.auto_send, auto_charge=options.auto_charge)
            if refs:
                for field, value in self._external_fields(refs).items():
                    setattr(invoice, field, value)
                invoice.status = OPEN
                invoice.metadata.finalized_at = utcnow()

        self._insert(invoice)
        logger.info("Invoice %s (%s) created for account %s: amount=%s status=%s external=%s",
                    invoice.id, invoice.invoice_number, account.id, invoice.amount,
                    invoice.status, invoice.external_invoice_id)
        return invoice

    def create_draft_invoice(self, options):
        _, account, invoice = self._build(options)
        self._insert(invoice)
        logger.info("Draft invoice %s created for account %s", invoice.id, account.id)
        return invoice

    def finalize_invoice(self, invoice_id):
        invoice = self._load(invoice_id)
        if invoice.status != DRAFT:
            raise InvalidStateTransition("Only draft invoices can be finalized")
        if not invoice.line_items:
            raise InvalidStateTransition("Cannot finalize an invoice without line items")

        fields = {"status": OPEN, "metadata.finalized_at": utcnow()}
        if self.processor and not invoice.external_invoice_id:
            refs = self._mirror(invoice, self._load_account(invoice.account_id))
            if refs:
                fields.update(self._external_fields(refs))

        invoice = self._apply(invoice, {"$set": fields}, status=DRAFT)
        logger.info("Invoice %s finalized (external=%s)", invoice.id, invoice.external_invoice_id)
        return invoice

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_invoice(self, invoice_id, updates):
        if isinstance(updates, dict):
            updates = UpdateInvoiceOptions.model_validate(updates)
        _check_metadata_keys(updates.metadata)
        invoice = self._load(invoice_id)

        if invoice.status not in (DRAFT, OPEN):
            raise InvalidStateTransition(f"Cannot edit a {invoice.status} invoice")
        draft_only = updates.description is not None or updates.due_date is not None or updates.discount is not None
        if draft_only and invoice.status != DRAFT:
            raise InvalidStateTransition("Only draft invoices can change description, due date or discount")

        fields = {}
        if updates.description is not None:
            fields["description"] = updates.description
        if updates.due_date is not None:
            fields["due_date"] = updates.due_date
        if updates.memo is not None:
            fields["metadata.memo"] = updates.memo
        if updates.footer is not None:
            fields["metadata.footer"] = updates.footer
        if updates.custom_fields is not None:
            fields["metadata.custom_fields"] = updates.custom_fields
        for key, value in updates.metadata.items():
            fields[f"metadata.extra.{key}"] = value
        if updates.discount is not None:
            summary = calculate_summary(invoice.line_items, updates.discount, invoice.metadata.taxes)
            fields.update({
                "metadata.discount": _dump(updates.discount),
                "metadata.summary": _dump(summary),
                "amount": summary.total,
                "amount_due": summary.amount_due,
            })

        if not fields:
            return invoice
        return self._apply(invoice, {"$set": fields}, status=invoice.status)

    def _replace_line_items(self, invoice, items):
        summary = calculate_summary(items, invoice.metadata.discount, invoice.metadata.taxes)
        return self._apply(invoice, {"$set": {
            "line_items": [_dump(item) for item in items],
            "amount": summary.total,
            "amount_due": summary.amount_due,
            "metadata.summary": _dump(summary),
        }}, status=DRAFT)

    def add_line_items(self, invoice_id, items):
        items = [LineItem.model_validate(item) if isinstance(item, dict) else item for item in items]
        invoice = self._load(invoice_id)
        if invoice.status != DRAFT:
            raise InvalidStateTransition("Can only add items to draft invoices")
        return self._replace_line_items(invoice, invoice.line_items + items)

    def remove_line_item(self, invoice_id, index):
        invoice = self._load(invoice_id)
        if invoice.status != DRAFT:
            raise InvalidStateTransition("Can only remove items from draft invoices")
        if not 0 <= index < len(invoice.line_items):
            raise NotFound("Line item not found")
        items = invoice.line_items[:index] + invoice.line_items[index + 1:]
        return self._replace_line_items(invoice, items)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def send_invoice(self, invoice_id, channel="email", custom_message=None):
        if channel not in ("email", "sms", "both"):
            raise ValueError(f"Unknown delivery channel: {channel}")
        invoice = self._load(invoice_id)
        if invoice.status not in (OPEN, PAID):
            raise InvalidStateTransition(f"Cannot send a {invoice.status} invoice")
        account = self._load_account(invoice.account_id)

        delivery = []
        payment_url = invoice.external_invoice_url or f"{self.config.APP_URL}/pay/{invoice.id}"
        clinic_name = self.config.CLINIC_NAME
        amount = format_money(invoice.amount)

        if self.processor and invoice.external_invoice_id and invoice.status == OPEN:
            try:
                self.processor.send_invoice(invoice.external_invoice_id)
                delivery.append(DeliveryResult(method="processor_email", success=True))
            except ExternalServiceFailure as e:
                delivery.append(DeliveryResult(method="processor_email", success=False, error=str(e)))

        if channel in ("email", "both") and account.email:
            if self.email_sender is None:
                delivery.append(DeliveryResult(method="email", success=False, error="Email sender not configured"))
            else:
                html, text = render_invoice_email(invoice, account, clinic_name, payment_url, custom_message)
                try:
                    self.email_sender.send(account.email, f"{clinic_name} - Invoice for {amount}", html, text)
                    delivery.append(DeliveryResult(method="email", success=True))
                except ExternalServiceFailure as e:
                    delivery.append(DeliveryResult(method="email", success=False, error=str(e)))

        if channel in ("sms", "both") and account.phone:
            if custom_message:
                body = f"{clinic_name}: {custom_message}\n\nInvoice: {amount}\nPay: {payment_url}"
            else:
                body = f"{clinic_name}: Your invoice for {amount} is ready. Pay securely: {payment_url}"
            if self.sms_sender is None:
                delivery.append(DeliveryResult(method="sms", success=False, error="SMS sender not configured"))
            else:
                try:
                    self.sms_sender.send(format_phone_number(account.phone), body)
                    delivery.append(DeliveryResult(method="sms", success=True))
                except ExternalServiceFailure as e:
                    delivery.append(DeliveryResult(method="sms", success=False, error=str(e)))

        self.invoices.update_one(self._query(invoice.id), {
            "$set": {
                "metadata.send_history.last_sent_at": utcnow(),
                "metadata.send_history.last_delivery": [_dump(d) for d in delivery],
            },
            "$inc": {"metadata.send_history.send_count": 1},
        })

        result = SendResult(success=any(d.success for d in delivery), delivery=delivery)
        logger.info("Invoice %s sent via %s: %s", invoice.id, channel,
                    ", ".join(f"{d.method}={'ok' if d.success else 'failed'}" for d in delivery) or "no channels")
        return result

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def void_invoice(self, invoice_id, reason=None):
        invoice = self._load(invoice_id)
        if invoice.status == PAID:
            raise InvalidStateTransition("Cannot void a paid invoice. Issue a refund instead.")
        if invoice.status in TERMINAL_STATUSES:
            raise InvalidStateTransition(f"Invoice is already {invoice.status}")

        if self.processor and invoice.external_invoice_id:
            try:
                self.processor.void_invoice(invoice.external_invoice_id)
            except ExternalServiceFailure as e:
                logger.warning("Processor void failed for invoice %s: %s", invoice.id, e)

        invoice = self._apply(invoice, {"$set": {
            "status": VOID,
            "metadata.voided_at": utcnow(),
            "metadata.void_reason": reason,
        }}, status=invoice.status)
        logger.info("Invoice %s voided", invoice.id)
        return invoice

    def mark_uncollectible(self, invoice_id, reason=None):
        invoice = self._load(invoice_id)
        if invoice.status != OPEN:
            raise InvalidStateTransition(f"Cannot mark a {invoice.status} invoice uncollectible")

        if self.processor and invoice.external_invoice_id:
            try:
                self.processor.mark_uncollectible(invoice.external_invoice_id)
            except ExternalServiceFailure as e:
                logger.warning("Processor mark-uncollectible failed for invoice %s: %s", invoice.id, e)

        invoice = self._apply(invoice, {"$set": {
            "status": UNCOLLECTIBLE,
            "metadata.uncollectible_at": utcnow(),
            "metadata.uncollectible_reason": reason,
        }}, status=OPEN)
        logger.info("Invoice %s marked uncollectible", invoice.id)
        return invoice

    # ------------------------------------------------------------------
    # Money
    # ------------------------------------------------------------------

    def record_payment(self, invoice_id, amount, method="manual", payment_intent_id=None, notes=None):
        if amount <= 0:
            raise ValueError("Payment amount must be positive")

        payment_id = ObjectId()
        for _ in range(self.MAX_RETRIES):
            invoice = self._load(invoice_id)
            if invoice.status != OPEN:
                raise InvalidStateTransition(f"Cannot record payment on {invoice.status} invoice")

            now = utcnow()
            total_paid = invoice.amount_paid + amount
            amount_due = max(0, invoice.amount - total_paid)
            is_paid = amount_due == 0
            fields = {"amount_paid": total_paid, "amount_due": amount_due}
            if is_paid:
                fields.update({"status": PAID, "paid_at": now})
            entry = PaymentHistoryEntry(payment_id=str(payment_id), amount=amount, method=method, date=now)
            try:
                invoice = self._apply(invoice, {"$set": fields, "$push": {"metadata.payments": _dump(entry)}},
                                      status=OPEN, amount_paid=invoice.amount_paid)
                break
            except ConcurrentUpdate:
                logger.debug("Invoice %s changed during payment, retrying", invoice.id)
        else:
            raise ConcurrentUpdate("Invoice kept changing while recording payment")

        payment = Payment(
            account_id=invoice.account_id,
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            amount=amount,
            currency=invoice.currency,
            status=PaymentStatus.SUCCEEDED,
            payment_method=method,
            payment_intent_id=payment_intent_id,
            notes=notes,
            is_partial=not is_paid,
            paid_at=now,
        )
        try:
            self.payments.insert_one({"_id": payment_id, **payment.to_doc()})
        except PyMongoError:
            # The invoice already carries this payment in metadata.payments
            logger.critical("Invoice %s was credited %s but payment %s could not be stored",
                            invoice.id, amount, payment_id)
            raise
        payment.id = str(payment_id)

        logger.info("Payment %s recorded on invoice %s: amount=%s total_paid=%s paid=%s",
                    payment.id, invoice.id, amount, invoice.amount_paid, is_paid)
        return PaymentRecorded(invoice=invoice, payment=payment, is_paid=is_paid,
                               remaining_balance=invoice.amount_due)

    def apply_credit(self, invoice_id, amount, description=None):
        """Settle part of an open invoice without moving money."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        for _ in range(self.MAX_RETRIES):
            invoice = self._load(invoice_id)
            if invoice.status != OPEN:
                raise InvalidStateTransition(f"Cannot apply credit to {invoice.status} invoice")

            total_paid = invoice.amount_paid + amount
            amount_due = max(0, invoice.amount - total_paid)
            fields = {"amount_paid": total_paid, "amount_due": amount_due}
            if amount_due == 0:
                fields.update({"status": PAID, "paid_at": utcnow()})
            entry = CreditEntry(amount=amount, description=description)
            try:
                invoice = self._apply(invoice, {"$set": fields, "$push": {"metadata.credits": _dump(entry)}},
                                      status=OPEN, amount_paid=invoice.amount_paid)
                break
            except ConcurrentUpdate:
                logger.debug("Invoice %s changed during credit, retrying", invoice.id)
        else:
            raise ConcurrentUpdate("Invoice kept changing while applying credit")

        logger.info("Credit of %s applied to invoice %s", amount, invoice.id)
        return invoice

    def issue_refund(self, invoice_id, amount=None, reason=None, refund_to_payment_method=False):
        invoice = self._load(invoice_id)
        if invoice.status != PAID:
            raise InvalidStateTransition("Can only refund paid invoices")
        if amount is not None and amount <= 0:
            raise ValueError("Refund amount must be positive")
        refund_amount = amount or invoice.amount_paid or invoice.amount
        if refund_amount <= 0 or refund_amount > invoice.amount_paid:
            raise ValueError("Refund amount must be positive and no more than the amount paid")

        if self.processor and refund_to_payment_method:
            payment = self.payments.find_one({"invoice_id": invoice.id, "payment_intent_id": {"$exists": True}})
            if payment:
                # Not swallowed: a refund the processor refused must not be booked locally
                self.processor.create_refund(payment["payment_intent_id"], refund_amount)

        for _ in range(self.MAX_RETRIES):
            if invoice.status != PAID or refund_amount > invoice.amount_paid:
                raise InvalidStateTransition("Invoice changed before the refund could be recorded")
            new_paid = invoice.amount_paid - refund_amount
            is_full = new_paid <= 0
            entry = RefundEntry(amount=refund_amount, reason=reason, is_full_refund=is_full)
            fields = {
                "amount_paid": max(0, new_paid),
                "amount_due": invoice.amount if is_full else max(0, invoice.amount - new_paid),
                "status": VOID if is_full else OPEN,
                "paid_at": None,
            }
            try:
                invoice = self._apply(invoice, {"$set": fields, "$push": {"metadata.refunds": _dump(entry)}},
                                      status=PAID, amount_paid=invoice.amount_paid)
                break
            except ConcurrentUpdate:
                invoice = self._load(invoice_id)
        else:
            raise ConcurrentUpdate("Invoice kept changing while issuing refund")

        logger.info("Refund of %s issued on invoice %s (full=%s)", refund_amount, invoice.id, is_full)
        return invoice

    def create_payment_plan(self, invoice_id, plan):
        if isinstance(plan, dict):
            plan = PaymentPlan.model_validate(plan)
        invoice = self._load(invoice_id)
        if invoice.status not in (DRAFT, OPEN):
            raise InvalidStateTransition(f"Cannot create a payment plan for a {invoice.status} invoice")

        state = PaymentPlanState(**plan.model_dump(), schedule=build_payment_schedule(plan))
        invoice = self._apply(invoice, {"$set": {"metadata.payment_plan": _dump(state)}}, status=invoice.status)
        logger.info("Payment plan of %s installments created for invoice %s", plan.number_of_payments, invoice.id)
        return invoice

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_invoice(self, invoice_id):
        return self._load(invoice_id)

    def list_payments(self, invoice_id):
        invoice = self._load(invoice_id)
        cursor = self.payments.find({"invoice_id": invoice.id}).sort("created_at", ASCENDING)
        return [Payment.from_doc(doc) for doc in cursor]

    def list_invoices(self, filters=None):
        if filters is None:
            filters = InvoiceFilters()
        elif isinstance(filters, dict):
            filters = InvoiceFilters.model_validate(filters)

        query = {}
        tenant_id = self.tenant_id or filters.tenant_id
        if tenant_id:
            query["tenant_id"] = tenant_id
        if filters.account_id:
            query["account_id"] = filters.account_id
        if filters.status:
            query["status"] = {"$in": [InvoiceStatus(s).value for s in filters.status]}
        if filters.from_date or filters.to_date:
            query["created_at"] = {}
            if filters.from_date:
                query["created_at"]["$gte"] = filters.from_date
            if filters.to_date:
                query["created_at"]["$lte"] = filters.to_date
        if filters.min_amount is not None or filters.max_amount is not None:
            query["amount"] = {}
            if filters.min_amount is not None:
                query["amount"]["$gte"] = filters.min_amount
            if filters.max_amount is not None:
                query["amount"]["$lte"] = filters.max_amount
        if filters.overdue:
            query["status"] = OPEN
            query["due_date"] = {"$lt": utcnow()}

        skip = (filters.page - 1) * filters.limit
        direction = ASCENDING if filters.order_dir == "asc" else DESCENDING
        cursor = self.invoices.find(query).sort(filters.order_by, direction).skip(skip).limit(filters.limit)
        invoices = [Invoice.from_doc(doc) for doc in cursor]
        total = self.invoices.count_documents(query)

        return {
            "invoices": invoices,
            "total": total,
            "page": filters.page,
            "total_pages": (total // filters.limit) + (1 if total % filters.limit else 0),
        }

    def account_invoice_summary(self, account_id, now=None):
        now = now or utcnow()
        query = {"account_id": account_id}
        if self.tenant_id:
            query["tenant_id"] = self.tenant_id

        summary = AccountInvoiceSummary()
        for doc in self.invoices.find(query):
            invoice = Invoice.from_doc(doc)
            summary.invoice_count += 1
            summary.total_invoiced += invoice.amount
            summary.total_paid += invoice.amount_paid
            if invoice.status == PAID:
                summary.paid_count += 1
            elif invoice.status == OPEN:
                summary.open_count += 1
                summary.total_outstanding += invoice.amount_due
                if invoice.due_date and invoice.due_date < now:
                    summary.overdue_count += 1
                    summary.overdue_amount += invoice.amount_due
        return summary

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def schedule_reminders(self, invoice_id, reminders):
        reminders = [Reminder.model_validate(r) if isinstance(r, dict) else r for r in reminders]
        invoice = self._load(invoice_id)
        if invoice.status not in (DRAFT, OPEN):
            raise InvalidStateTransition(f"Cannot schedule reminders for a {invoice.status} invoice")
        return self._apply(invoice, {"$set": {
            "metadata.reminders.schedule": [_dump(r) for r in reminders],
            "metadata.reminders.scheduled_at": utcnow(),
        }})

    @staticmethod
    def reminder_due(reminder, due_date, now):
        if reminder.type == "before_due":
            return due_date - timedelta(days=reminder.days_offset) <= now < due_date
        if reminder.type == "on_due":
            return now.date() == due_date.date()
        return now >= due_date + timedelta(days=reminder.days_offset)

    def process_due_reminders(self, now=None):
        """Send every reminder whose window has opened, at most once per reminder key.

        A key is claimed in the invoice document before sending, so overlapping
        sweeps cannot double-send. The claim is released when no channel
        delivered, letting the next sweep try again.
        """
        now = now or utcnow()
        run = ReminderRun()
        query = {"status": OPEN}
        if self.tenant_id:
            query["tenant_id"] = self.tenant_id

        for doc in self.invoices.find(query):
            invoice = Invoice.from_doc(doc)
            if not invoice.due_date:
                continue
            state = invoice.metadata.reminders
            for reminder in state.schedule:
                key = reminder.key
                if key in state.sent or not self.reminder_due(reminder, invoice.due_date, now):
                    continue

                claim = self.invoices.update_one(
                    {"_id": doc["_id"], "metadata.reminders.sent": {"$ne": key}},
                    {"$addToSet": {"metadata.reminders.sent": key}},
                )
                if claim.modified_count == 0:
                    continue

                run.processed += 1
                try:
                    result = self.send_invoice(invoice.id, channel=reminder.channel,
                                               custom_message=reminder.message or REMINDER_MESSAGES[reminder.type])
                except (NotFound, InvalidStateTransition) as e:
                    logger.error("Failed to send reminder %s for invoice %s: %s", key, invoice.id, e)
                    result = None
                except Exception:
                    logger.exception("Failed to send reminder %s for invoice %s", key, invoice.id)
                    result = None

                if result is not None and result.success:
                    run.sent += 1
                else:
                    run.errors += 1
                    self._release_reminder(doc["_id"], key)

        logger.info("Reminder sweep: processed=%s sent=%s errors=%s", run.processed, run.sent, run.errors)
        return run

    def _release_reminder(self, oid, key):
        try:
            self.invoices.update_one({"_id": oid}, {"$pull": {"metadata.reminders.sent": key}})
        except PyMongoError:
            logger.exception("Could not release reminder %s on invoice %s", key, oid)
