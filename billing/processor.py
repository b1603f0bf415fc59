"""Payment processor access.

Services receive a ``PaymentProcessor`` in their constructor. ``StripeProcessor``
talks to Stripe with a per-instance API key; every failure surfaces as
``ExternalServiceFailure`` so callers only have one error type to tolerate.
"""
import functools
import logging

import stripe

from billing.errors import ExternalServiceFailure

logger = logging.getLogger(__name__)


class PaymentProcessor:
    """Interface consumed by ``InvoiceManager``. All methods may raise ExternalServiceFailure."""

    def create_customer(self, account):
        raise NotImplementedError

    def create_invoice(self, customer_id, *, description, collection_method, days_until_due,
                       footer=None, custom_fields=None, metadata=None):
        raise NotImplementedError

    def add_invoice_item(self, customer_id, invoice_id, *, description, amount, currency, metadata=None):
        raise NotImplementedError

    def create_coupon(self, discount, currency):
        raise NotImplementedError

    def apply_coupon(self, invoice_id, coupon_id):
        raise NotImplementedError

    def finalize_invoice(self, invoice_id):
        raise NotImplementedError

    def send_invoice(self, invoice_id):
        raise NotImplementedError

    def pay_invoice(self, invoice_id):
        raise NotImplementedError

    def void_invoice(self, invoice_id):
        raise NotImplementedError

    def mark_uncollectible(self, invoice_id):
        raise NotImplementedError

    def create_refund(self, payment_intent_id, amount):
        raise NotImplementedError


def _wrap_stripe_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            raise ExternalServiceFailure(f"Stripe {func.__name__} failed: {e.user_message or e}") from e
    return wrapper


def _invoice_refs(invoice):
    return {
        "id": invoice["id"],
        "number": invoice.get("number"),
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        "invoice_pdf": invoice.get("invoice_pdf"),
    }


class StripeProcessor(PaymentProcessor):
    def __init__(self, api_key):
        self.api_key = api_key

    @_wrap_stripe_errors
    def create_customer(self, account):
        customer = stripe.Customer.create(
            api_key=self.api_key,
            email=account.email or None,
            name=account.full_name or None,
            phone=account.phone or None,
            metadata={"account_id": account.id, "tenant_id": account.tenant_id or ""},
        )
        return customer["id"]

    @_wrap_stripe_errors
    def create_invoice(self, customer_id, *, description, collection_method, days_until_due,
                       footer=None, custom_fields=None, metadata=None):
        params = {
            "customer": customer_id,
            "collection_method": collection_method,
            "auto_advance": False,
            "metadata": metadata or {},
        }
        if collection_method == "send_invoice":
            params["days_until_due"] = days_until_due
        if description:
            params["description"] = description
        if footer:
            params["footer"] = footer
        if custom_fields:
            # Stripe accepts at most four custom fields
            params["custom_fields"] = [{"name": k, "value": v} for k, v in list(custom_fields.items())[:4]]
        return _invoice_refs(stripe.Invoice.create(api_key=self.api_key, **params))

    @_wrap_stripe_errors
    def add_invoice_item(self, customer_id, invoice_id, *, description, amount, currency, metadata=None):
        stripe.InvoiceItem.create(
            api_key=self.api_key,
            customer=customer_id,
            invoice=invoice_id,
            description=description,
            amount=amount,
            currency=currency,
            metadata=metadata or {},
        )

    @_wrap_stripe_errors
    def create_coupon(self, discount, currency):
        if discount.type == "percentage":
            terms = {"percent_off": discount.value}
        else:
            terms = {"amount_off": int(discount.value), "currency": currency}
        coupon = stripe.Coupon.create(
            api_key=self.api_key,
            duration="once",
            name=discount.description or "Invoice Discount",
            **terms,
        )
        return coupon["id"]

    @_wrap_stripe_errors
    def apply_coupon(self, invoice_id, coupon_id):
        stripe.Invoice.modify(invoice_id, api_key=self.api_key, discounts=[{"coupon": coupon_id}])

    @_wrap_stripe_errors
    def finalize_invoice(self, invoice_id):
        return _invoice_refs(stripe.Invoice.finalize_invoice(invoice_id, api_key=self.api_key))

    @_wrap_stripe_errors
    def send_invoice(self, invoice_id):
        stripe.Invoice.send_invoice(invoice_id, api_key=self.api_key)

    @_wrap_stripe_errors
    def pay_invoice(self, invoice_id):
        stripe.Invoice.pay(invoice_id, api_key=self.api_key)

    @_wrap_stripe_errors
    def void_invoice(self, invoice_id):
        stripe.Invoice.void_invoice(invoice_id, api_key=self.api_key)

    @_wrap_stripe_errors
    def mark_uncollectible(self, invoice_id):
        stripe.Invoice.mark_uncollectible(invoice_id, api_key=self.api_key)

    @_wrap_stripe_errors
    def create_refund(self, payment_intent_id, amount):
        refund = stripe.Refund.create(
            api_key=self.api_key,
            payment_intent=payment_intent_id,
            amount=amount,
            reason="requested_by_customer",
        )
        return refund["id"]


def build_processor(config):
    if not config.STRIPE_SECRET_KEY:
        logger.warning("Stripe not configured - invoices will be local only")
        return None
    return StripeProcessor(config.STRIPE_SECRET_KEY)
