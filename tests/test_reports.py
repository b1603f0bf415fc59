"""Tests for the pandas report frames."""

from datetime import datetime

from billing.db import INVOICES, RECONCILIATIONS
from billing.reports import (
    INVOICE_COLUMNS,
    RECONCILIATION_COLUMNS,
    invoice_frame,
    reconciliation_frame,
    summarize_reconciliations,
    to_csv_bytes,
)


def _record(event_id, status, amount, tenant_id="clinic-1", processed_at=datetime(2026, 3, 1)):
    return {
        "event_id": event_id,
        "event_type": "charge.succeeded",
        "status": status,
        "amount": amount,
        "currency": "usd",
        "tenant_id": tenant_id,
        "account_created": status == "CREATED",
        "processed_at": processed_at,
    }


def test_empty_frame_has_all_columns(db):
    df = reconciliation_frame(db)

    assert df.empty
    assert list(df.columns) == ["id"] + RECONCILIATION_COLUMNS


def test_reconciliation_frame_filters_tenant_and_dates(db):
    db[RECONCILIATIONS].insert_many([
        _record("evt_1", "MATCHED", 1000),
        _record("evt_2", "CREATED", 2000),
        _record("evt_3", "MATCHED", 3000, tenant_id="clinic-2"),
        _record("evt_4", "FAILED", 4000, processed_at=datetime(2026, 4, 2)),
    ])

    df = reconciliation_frame(db, "clinic-1", start=datetime(2026, 3, 1), end=datetime(2026, 4, 1))

    assert list(df["event_id"]) == ["evt_1", "evt_2"]
    assert df["amount"].sum() == 3000
    assert list(df["account_created"]) == [False, True]


def test_summary_groups_by_status(db):
    db[RECONCILIATIONS].insert_many([
        _record("evt_1", "MATCHED", 1000),
        _record("evt_2", "MATCHED", 500),
        _record("evt_3", "FAILED", 700),
    ])

    summary = summarize_reconciliations(reconciliation_frame(db)).set_index("status")

    assert summary.loc["MATCHED", "count"] == 2
    assert summary.loc["MATCHED", "amount"] == 1500
    assert summary.loc["FAILED", "count"] == 1


def test_invoice_frame_and_csv(db):
    db[INVOICES].insert_many([
        {"invoice_number": "INV-202603-0001", "account_id": "a1", "status": "PAID", "amount": 1000,
         "amount_paid": 1000, "amount_due": 0, "currency": "usd", "created_at": datetime(2026, 3, 2)},
        {"invoice_number": "INV-202603-0002", "account_id": "a1", "status": "OPEN", "amount": 2000,
         "amount_paid": 0, "amount_due": 2000, "currency": "usd", "created_at": datetime(2026, 3, 3),
         "due_date": datetime(2026, 4, 2)},
    ])

    df = invoice_frame(db, status="OPEN")
    assert list(df.columns) == ["id"] + INVOICE_COLUMNS
    assert list(df["invoice_number"]) == ["INV-202603-0002"]

    csv = to_csv_bytes(invoice_frame(db)).decode("utf-8").splitlines()
    assert csv[0] == ",".join(["id"] + INVOICE_COLUMNS)
    assert len(csv) == 3
    assert "2026-04-02T00:00:00Z" in csv[2]
