"""Resolve inbound payment events to existing patient accounts.

Strategies run in a fixed order and the first hit wins:

1. processor customer id (exact)
2. email, case-insensitive (high)
3. phone, digits only with country-code variants (medium)
4. full name, first + last, case-insensitive (low)
"""
import logging
import re

from pymongo import DESCENDING

from billing.db import ACCOUNTS
from billing.models import Account, MatchConfidence, MatchedBy, MatchResult

logger = logging.getLogger(__name__)

# Most recently created account wins when several match
_NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def split_name(full_name):
    """Split on the last whitespace token: ("Mary Ann", "Smith").

    Single-token names come back with an empty last name. Multi-word
    surnames ("de la Cruz") and suffixes are not handled.
    """
    parts = full_name.strip().split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return " ".join(parts[:-1]), parts[-1]


def phone_variants(phone):
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return []
    variants = [digits]
    if len(digits) == 10:
        variants.append("1" + digits)
    if len(digits) == 11 and digits.startswith("1"):
        variants.append(digits[1:])
    return variants


def _digits_pattern(digits):
    # Stored numbers may carry formatting between digits: "(555) 123-4567"
    return r"\D*".join(digits)


def _exact_ci(value):
    return {"$regex": f"^{re.escape(value.strip())}$", "$options": "i"}


class PatientMatcher:
    def __init__(self, db):
        self.accounts = db[ACCOUNTS]

    def _first(self, query, tenant_id=None):
        if tenant_id:
            query["tenant_id"] = tenant_id
        doc = next(iter(self.accounts.find(query).sort(_NEWEST_FIRST).limit(1)), None)
        return Account.from_doc(doc)

    def find_by_customer_id(self, customer_id):
        return Account.from_doc(self.accounts.find_one({"external_customer_id": customer_id}))

    def find_by_email(self, email, tenant_id=None):
        return self._first({"email": _exact_ci(email.lower())}, tenant_id)

    def find_by_phone(self, phone, tenant_id=None):
        variants = phone_variants(phone)
        if not variants:
            return None
        query = {"$or": [{"phone": {"$regex": _digits_pattern(v)}} for v in variants]}
        return self._first(query, tenant_id)

    def find_by_name(self, first_name, last_name, tenant_id=None):
        query = {"first_name": _exact_ci(first_name), "last_name": _exact_ci(last_name)}
        return self._first(query, tenant_id)

    def match_account(self, event, tenant_id=None):
        if event.customer_id:
            account = self.find_by_customer_id(event.customer_id)
            if account:
                logger.debug("Matched by customer id %s -> account %s", event.customer_id, account.id)
                return MatchResult(account=account, matched_by=MatchedBy.EXTERNAL_CUSTOMER_ID,
                                   confidence=MatchConfidence.EXACT)

        if event.email:
            account = self.find_by_email(event.email, tenant_id)
            if account:
                logger.debug("Matched by email -> account %s", account.id)
                return MatchResult(account=account, matched_by=MatchedBy.EMAIL,
                                   confidence=MatchConfidence.HIGH)

        if event.phone:
            account = self.find_by_phone(event.phone, tenant_id)
            if account:
                logger.debug("Matched by phone -> account %s", account.id)
                return MatchResult(account=account, matched_by=MatchedBy.PHONE,
                                   confidence=MatchConfidence.MEDIUM)

        if event.name:
            first_name, last_name = split_name(event.name)
            if first_name and last_name:
                account = self.find_by_name(first_name, last_name, tenant_id)
                if account:
                    logger.debug("Matched by name -> account %s", account.id)
                    return MatchResult(account=account, matched_by=MatchedBy.NAME,
                                       confidence=MatchConfidence.LOW)

        logger.debug("No account match for customer=%s payment_intent=%s",
                     event.customer_id, event.payment_intent_id)
        return MatchResult()
