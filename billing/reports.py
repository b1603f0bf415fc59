# reports.py
import pandas as pd

from billing.db import INVOICES, RECONCILIATIONS

RECONCILIATION_COLUMNS = [
    "event_id", "event_type", "status", "matched_by", "match_confidence",
    "account_created", "account_id", "invoice_id", "customer_email",
    "customer_name", "amount", "currency", "error_message", "processed_at",
]

INVOICE_COLUMNS = [
    "invoice_number", "account_id", "status", "amount", "amount_paid",
    "amount_due", "currency", "due_date", "paid_at", "created_at",
]


def _date_range(field, start, end):
    if not (start or end):
        return {}
    bounds = {}
    if start:
        bounds["$gte"] = start
    if end:
        bounds["$lt"] = end
    return {field: bounds}


def _frame(cursor, columns):
    df = pd.DataFrame(list(cursor))
    # Make sure every expected column exists even when no row carried it
    for col in columns:
        if col not in df.columns:
            df[col] = None
    df = df.rename(columns={"_id": "id"})
    if "id" in df.columns:
        df["id"] = df["id"].astype(str)
    else:
        df["id"] = None
    return df[["id"] + columns]


def reconciliation_frame(db, tenant_id=None, start=None, end=None):
    query = _date_range("processed_at", start, end)
    if tenant_id:
        query["tenant_id"] = tenant_id
    df = _frame(db[RECONCILIATIONS].find(query).sort("processed_at", 1), RECONCILIATION_COLUMNS)
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0).astype(int)
    df["account_created"] = df["account_created"].fillna(False).astype(bool)
    df["processed_at"] = pd.to_datetime(df["processed_at"], errors="coerce")
    return df


def invoice_frame(db, tenant_id=None, start=None, end=None, status=None):
    query = _date_range("created_at", start, end)
    if tenant_id:
        query["tenant_id"] = tenant_id
    if status:
        query["status"] = status
    df = _frame(db[INVOICES].find(query).sort("created_at", 1), INVOICE_COLUMNS)
    for col in ("amount", "amount_paid", "amount_due"):
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).astype(int)
    for col in ("due_date", "paid_at", "created_at"):
        df[col] = pd.to_datetime(df[col], errors="coerce")
    return df


def summarize_reconciliations(df):
    """Counts and amounts per reconciliation status."""
    if df.empty:
        return pd.DataFrame(columns=["status", "count", "amount"])
    grouped = df.groupby("status").agg(count=("event_id", "size"), amount=("amount", "sum"))
    return grouped.reset_index()


def to_csv_bytes(df):
    return df.to_csv(index=False, date_format="%Y-%m-%dT%H:%M:%SZ").encode("utf-8")
