# db.py
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from billing.errors import NotFound

ACCOUNTS = "accounts"
INVOICES = "invoices"
PAYMENTS = "payments"
RECONCILIATIONS = "reconciliations"
COUNTERS = "counters"


def ensure_indexes(db):
    # One reconciliation row per processor event; the loser of a race gets DuplicateKeyError
    db[RECONCILIATIONS].create_index([("event_id", ASCENDING)], unique=True)
    db[RECONCILIATIONS].create_index([("tenant_id", ASCENDING), ("processed_at", DESCENDING)])

    db[ACCOUNTS].create_index([("external_customer_id", ASCENDING)], unique=True, sparse=True)
    db[ACCOUNTS].create_index([("tenant_id", ASCENDING), ("email", ASCENDING)])

    db[INVOICES].create_index([("external_invoice_id", ASCENDING)], unique=True, sparse=True)
    db[INVOICES].create_index([("tenant_id", ASCENDING), ("status", ASCENDING)])
    db[INVOICES].create_index([("account_id", ASCENDING)])

    db[PAYMENTS].create_index([("payment_intent_id", ASCENDING)], sparse=True)
    db[PAYMENTS].create_index([("invoice_id", ASCENDING)])


def to_object_id(value, what="Record"):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def next_sequence(db, key):
    """Atomically bump and return the counter stored under ``key``."""
    counter = db[COUNTERS].find_one_and_update(
        {"_id": key},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]
