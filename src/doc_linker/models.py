from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional


@dataclass
class Transaction:
    id: int
    account_id: int
    gross_amount: Decimal
    timestamp: datetime
    net_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    counterparty: str = ""
    sender_receiver: str = ""
    note: str = ""
    reference: str = ""
    is_outgoing: bool = False
    is_income_tax_relevant: Optional[bool] = None
    is_sales_tax_relevant: Optional[bool] = None
    tax_month: Optional[int] = None
    tax_year: Optional[int] = None


@dataclass
class Document:
    id: int
    name: str
    external_ref: Optional[str] = None
    orphaned: bool = True
    parsed: bool = False
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    subtotal: Optional[Decimal] = None
    total: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    skonto: Optional[Decimal] = None
    vendor_name: Optional[str] = None
    invoice_date_from_folder: Optional[date] = None

    def best_amount(self) -> Optional[Decimal]:
        """total を優先し、無ければ subtotal"""
        if self.total is not None:
            return self.total
        return self.subtotal

    def best_date(self) -> Optional[date]:
        """請求日を優先し、無ければフォルダ由来の日付"""
        if self.invoice_date is not None:
            return self.invoice_date
        return self.invoice_date_from_folder


@dataclass(frozen=True)
class Attachment:
    id: int
    transaction_id: int
    document_id: int
    attached_at: datetime
    attached_by: Optional[str] = None
    is_automatic: bool = False


@dataclass(frozen=True)
class PatternRule:
    receiver: str
    comment_pattern: str
    amount_must_match: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class FeatureVector:
    amount_similarity: float
    date_diff_days: Optional[int]  # None = 日付なし（差は無限大扱い）
    vendor_similarity: float
    invoice_number_match: float
    skonto_match: float
    pattern_match: float
    # 値と無関係に決まる適用可否（証憑に skonto があるか / 振込先のルールがあるか）
    skonto_applicable: bool = True
    pattern_applicable: bool = True

    def as_dict(self) -> Dict:
        return {
            "amount_similarity": self.amount_similarity,
            "date_diff_days": self.date_diff_days,
            "vendor_similarity": self.vendor_similarity,
            "invoice_number_match": self.invoice_number_match,
            "skonto_match": self.skonto_match,
            "pattern_match": self.pattern_match,
            "skonto_applicable": self.skonto_applicable,
            "pattern_applicable": self.pattern_applicable,
        }


@dataclass
class ScoreBreakdown:
    composite_score: float
    contributions: Dict[str, float]
    reasons: List[str] = field(default_factory=list)


@dataclass
class CandidateMatch:
    document: Document
    score: float
    features: FeatureVector
    breakdown: ScoreBreakdown

    @property
    def document_id(self) -> int:
        return self.document.id

    def sort_key(self):
        days = self.features.date_diff_days
        return (-self.score, float("inf") if days is None else days, self.document.id)

    def as_dict(self) -> Dict:
        return {
            "document_id": self.document.id,
            "composite_score": round(self.score, 4),
            "feature_breakdown": self.features.as_dict(),
            "contributions": self.breakdown.contributions,
            "reasons": self.breakdown.reasons,
        }


@dataclass
class RankedCandidates:
    candidates: List[CandidateMatch]
    eligible_count: int

    def __iter__(self):
        return iter(self.candidates)

    def __len__(self):
        return len(self.candidates)

    def __getitem__(self, i):
        return self.candidates[i]


@dataclass
class TransactionOutcome:
    transaction_id: int
    matched: bool
    document_id: Optional[int] = None
    score: Optional[float] = None
    reason: Optional[str] = None
    attachment_id: Optional[int] = None


@dataclass
class AssignmentResult:
    outcomes: List[TransactionOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def matched_count(self) -> int:
        return sum(1 for o in self.outcomes if o.matched)

    @property
    def unmatched_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.matched)

    @property
    def total_processed(self) -> int:
        return len(self.outcomes)

    def reason_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for o in self.outcomes:
            if not o.matched:
                counts[o.reason] = counts.get(o.reason, 0) + 1
        return counts


@dataclass
class AttachmentSummary:
    transaction_id: int
    attached_document_count: int
    total_attached_amount: Decimal
    transaction_amount: Decimal
    amount_difference: Decimal
    has_amount_mismatch: bool
    document_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class Period:
    year: int
    month: int

    @classmethod
    def parse(cls, text: str) -> "Period":
        try:
            year_s, month_s = text.strip().split("-", 1)
            year, month = int(year_s), int(month_s)
        except (AttributeError, ValueError):
            raise ValueError(f"期間の形式が不正です (YYYY-MM): {text!r}")
        if not 1 <= month <= 12:
            raise ValueError(f"月が範囲外です: {text!r}")
        return cls(year, month)

    def contains(self, ts: datetime) -> bool:
        return ts.year == self.year and ts.month == self.month

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"
