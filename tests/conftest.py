"""Shared fixtures: an in-memory MongoDB plus fake processor and senders."""

import itertools

import mongomock
import pytest

from billing.config import Config
from billing.db import ACCOUNTS, ensure_indexes
from billing.errors import ExternalServiceFailure
from billing.invoices import InvoiceManager
from billing.models import Account
from billing.processor import PaymentProcessor
from billing.notifications import EmailSender, SmsSender


class FakeProcessor(PaymentProcessor):
    """Records every call. Methods named in ``failing`` raise ExternalServiceFailure."""

    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)
        self._ids = itertools.count(1)

    def _call(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.failing:
            raise ExternalServiceFailure(f"{name} unavailable")

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def _refs(self, invoice_id):
        return {
            "id": invoice_id,
            "number": f"EXT-{invoice_id}",
            "hosted_invoice_url": f"https://pay.stripe.test/{invoice_id}",
            "invoice_pdf": f"https://pay.stripe.test/{invoice_id}.pdf",
        }

    def create_customer(self, account):
        self._call("create_customer", account)
        return f"cus_fake{next(self._ids)}"

    def create_invoice(self, customer_id, **kwargs):
        self._call("create_invoice", customer_id, **kwargs)
        return self._refs(f"in_fake{next(self._ids)}")

    def add_invoice_item(self, customer_id, invoice_id, **kwargs):
        self._call("add_invoice_item", customer_id, invoice_id, **kwargs)

    def create_coupon(self, discount, currency):
        self._call("create_coupon", discount, currency)
        return f"coupon_{next(self._ids)}"

    def apply_coupon(self, invoice_id, coupon_id):
        self._call("apply_coupon", invoice_id, coupon_id)

    def finalize_invoice(self, invoice_id):
        self._call("finalize_invoice", invoice_id)
        return self._refs(invoice_id)

    def send_invoice(self, invoice_id):
        self._call("send_invoice", invoice_id)

    def pay_invoice(self, invoice_id):
        self._call("pay_invoice", invoice_id)

    def void_invoice(self, invoice_id):
        self._call("void_invoice", invoice_id)

    def mark_uncollectible(self, invoice_id):
        self._call("mark_uncollectible", invoice_id)

    def create_refund(self, payment_intent_id, amount):
        self._call("create_refund", payment_intent_id, amount)
        return f"re_fake{next(self._ids)}"


class FakeEmailSender(EmailSender):
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to, subject, html, text):
        if self.fail:
            raise ExternalServiceFailure("Email delivery failed")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return "msg-1"


class FakeSmsSender(SmsSender):
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to, body):
        if self.fail:
            raise ExternalServiceFailure("SMS delivery failed")
        self.sent.append({"to": to, "body": body})
        return "sms-1"


@pytest.fixture
def config():
    return Config(
        MONGO_URI="mongodb://localhost:27017",
        MONGO_DB_NAME="billing_test",
        DEFAULT_CLINIC_ID=None,
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
        CURRENCY="usd",
        INVOICE_DUE_DAYS=30,
        SES_SENDER=None,
        APP_URL="https://billing.example.test",
        CLINIC_NAME="Test Clinic",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["billing_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def make_account(db):
    def _make(**fields):
        data = {"first_name": "Jane", "last_name": "Doe", "tenant_id": "clinic-1"}
        data.update(fields)
        account = Account(**data)
        account.id = str(db[ACCOUNTS].insert_one(account.to_doc()).inserted_id)
        return account
    return _make


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def sms_sender():
    return FakeSmsSender()


@pytest.fixture
def manager(db, config, email_sender, sms_sender):
    """Local-only manager: no payment processor configured."""
    return InvoiceManager(db, email_sender=email_sender, sms_sender=sms_sender, config=config)


@pytest.fixture
def stripe_manager(db, config, processor, email_sender, sms_sender):
    return InvoiceManager(db, processor=processor, email_sender=email_sender,
                          sms_sender=sms_sender, config=config)
