from datetime import date, datetime
from decimal import Decimal

import pytest

from doc_linker.models import Document, Transaction
from doc_linker.records import RecordStore
from doc_linker.state_store import AttachmentLedger


def _tx(id=1, gross="100.00", ts=datetime(2024, 3, 10, 12, 0), account_id=1, **kw):
    return Transaction(id=id, account_id=account_id, gross_amount=Decimal(gross), timestamp=ts, **kw)


def _doc(id=1, total="100.00", invoice_date=date(2024, 3, 10), parsed=True, **kw):
    return Document(
        id=id,
        name=f"doc{id}.pdf",
        parsed=parsed,
        total=Decimal(total) if total is not None else None,
        invoice_date=invoice_date,
        **kw,
    )


@pytest.fixture
def make_tx():
    return _tx


@pytest.fixture
def make_doc():
    return _doc


@pytest.fixture
def ledger(tmp_path, monkeypatch):
    db = tmp_path / "ledger.db"
    monkeypatch.setenv("ATTACHMENT_LEDGER_DB", str(db))
    return AttachmentLedger()


@pytest.fixture
def store():
    return RecordStore()
