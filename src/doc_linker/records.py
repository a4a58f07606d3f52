"""
取引・証憑・パターンルールの読み取り用ストア
永続化は外部の責務なので、ここではメモリ上のスナップショットとして保持する
"""

import json
import threading
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

from .errors import NotFoundError, ValidationError
from .models import Document, PatternRule, Period, Transaction

_DECIMAL_FIELDS = {"gross_amount", "net_amount", "tax_amount", "tax_rate", "subtotal", "total", "skonto"}


class RecordStore:
    def __init__(
        self,
        transactions: Iterable[Transaction] = (),
        documents: Iterable[Document] = (),
        pattern_rules: Iterable[PatternRule] = (),
    ):
        self._lock = threading.Lock()
        self._transactions: Dict[int, Transaction] = {t.id: t for t in transactions}
        self._documents: Dict[int, Document] = {d.id: d for d in documents}
        self._rules: List[PatternRule] = list(pattern_rules)

    def fetch_transactions(self, period: Optional[Period] = None, account_id: Optional[int] = None) -> List[Transaction]:
        with self._lock:
            txs = list(self._transactions.values())
        if period is not None:
            txs = [t for t in txs if period.contains(t.timestamp)]
        if account_id is not None:
            txs = [t for t in txs if t.account_id == account_id]
        return sorted(txs, key=lambda t: (t.timestamp, t.id))

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(transaction_id)

    def fetch_documents(self, parsed: Optional[bool] = True) -> List[Document]:
        with self._lock:
            docs = list(self._documents.values())
        if parsed is not None:
            docs = [d for d in docs if d.parsed == parsed]
        return sorted(docs, key=lambda d: d.id)

    def get_document(self, document_id: int) -> Optional[Document]:
        with self._lock:
            return self._documents.get(document_id)

    def fetch_pattern_rules(self) -> List[PatternRule]:
        with self._lock:
            return list(self._rules)

    def set_orphaned(self, document_id: int, orphaned: bool):
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")
            self._documents[document_id] = replace(doc, orphaned=orphaned)


def _parse_value(key: str, value):
    if value is None:
        return None
    if key in _DECIMAL_FIELDS:
        return Decimal(str(value))
    if key == "timestamp" and isinstance(value, str):
        return datetime.fromisoformat(value)
    if key == "timestamp" and isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, datetime.min.time())
    if key in ("invoice_date", "invoice_date_from_folder") and isinstance(value, str):
        return date.fromisoformat(value)
    return value


def _build(cls, raw: Dict):
    try:
        return cls(**{k: _parse_value(k, v) for k, v in raw.items()})
    except (TypeError, ValueError, ArithmeticError, AttributeError) as e:
        raise ValidationError(f"{cls.__name__} のデータが不正です: {raw!r} ({e})")


def load_records(path: str) -> RecordStore:
    """JSON / YAML ファイルから RecordStore を作る"""
    p = Path(path)
    with open(p, "r", encoding="utf-8") as f:
        try:
            if p.suffix.lower() in (".yml", ".yaml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ValidationError(f"データファイルを読み込めません: {path} ({e})")
    if not isinstance(data, dict):
        raise ValidationError(f"データファイルの形式が不正です: {path}")
    return RecordStore(
        transactions=[_build(Transaction, t) for t in data.get("transactions", [])],
        documents=[_build(Document, d) for d in data.get("documents", [])],
        pattern_rules=[_build(PatternRule, r) for r in data.get("pattern_rules", [])],
    )
