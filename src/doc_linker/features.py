from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from .config_loader import DEFAULTS
from .models import Document, FeatureVector, Transaction
from .pattern_rules import PatternRuleIndex
from .text_utils import contains_token, name_similarity, normalize_name

EPSILON = Decimal("0.000001")


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def amount_similarity(tx: Transaction, doc: Document) -> float:
    a = _to_decimal(tx.gross_amount)
    b = _to_decimal(doc.best_amount())
    if a is None or b is None:
        return 0.0
    # 取引は符号付き（方向は is_outgoing）なので絶対値で比較
    a, b = abs(a), abs(b)
    if a == b:
        return 1.0
    ratio = abs(a - b) / max(a, b, EPSILON)
    return float(1 - min(Decimal(1), ratio))


def date_difference(tx: Transaction, doc: Document) -> Optional[int]:
    doc_date = doc.best_date()
    if doc_date is None or tx.timestamp is None:
        return None
    return abs((tx.timestamp.date() - doc_date).days)


def vendor_similarity(tx: Transaction, doc: Document) -> Tuple[float, Optional[str]]:
    """証憑の取引先名と、counterparty → sender_receiver の順で比較"""
    vendor = normalize_name(doc.vendor_name or "")
    if not vendor:
        return 0.0, None
    best, best_field = 0.0, None
    for field_name in ("counterparty", "sender_receiver"):
        sim = name_similarity(vendor, normalize_name(getattr(tx, field_name) or ""))
        # 同点なら先に評価したフィールドを優先
        if sim > best:
            best, best_field = sim, field_name
    return best, best_field


def invoice_number_match(tx: Transaction, doc: Document) -> float:
    number = (doc.invoice_number or "").strip()
    if not number:
        return 0.0
    if contains_token(tx.note or "", number) or contains_token(tx.reference or "", number):
        return 1.0
    return 0.0


def skonto_match(tx: Transaction, doc: Document, tolerance: Decimal, basis: str = "amount") -> float:
    skonto = _to_decimal(doc.skonto)
    base = _to_decimal(doc.best_amount())
    gross = _to_decimal(tx.gross_amount)
    if skonto is None or skonto <= 0 or base is None or gross is None:
        return 0.0
    if basis == "percent":
        discounted = base * (1 - min(skonto, Decimal(100)) / 100)
    else:
        discounted = base - skonto
    return 1.0 if abs(abs(discounted) - abs(gross)) <= tolerance else 0.0


def extract_features(
    tx: Transaction,
    doc: Document,
    rule_index: Optional[PatternRuleIndex] = None,
    cfg: Optional[Dict] = None,
) -> FeatureVector:
    cfg = cfg or DEFAULTS
    tolerance = _to_decimal(cfg.get("tolerances", {}).get("amount", 0.01))
    if tolerance is None:
        tolerance = Decimal("0.01")
    basis = cfg.get("skonto", {}).get("basis", "amount")

    amount = amount_similarity(tx, doc)
    vendor, _ = vendor_similarity(tx, doc)
    pattern = 0.0
    pattern_applicable = False
    if rule_index is not None and rule_index.rules_for(tx.sender_receiver):
        pattern_applicable = True
        if rule_index.matches(tx, amount) is not None:
            pattern = 1.0
    skonto = _to_decimal(doc.skonto)

    return FeatureVector(
        amount_similarity=amount,
        date_diff_days=date_difference(tx, doc),
        vendor_similarity=vendor,
        invoice_number_match=invoice_number_match(tx, doc),
        skonto_match=skonto_match(tx, doc, tolerance, basis),
        pattern_match=pattern,
        # 満額で支払われた証憑には skonto の重みを掛けない
        skonto_applicable=skonto is not None and skonto > 0 and amount < 1.0,
        pattern_applicable=pattern_applicable,
    )
