import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Dict, List, Optional, Union

from .config_loader import merge_config, validate_config
from .errors import DocumentAlreadyClaimedError, DuplicatePairError, NotFoundError, ValidationError
from .matcher import rank_candidates
from .models import (
    AssignmentResult,
    Attachment,
    AttachmentSummary,
    CandidateMatch,
    Period,
    RankedCandidates,
    Transaction,
    TransactionOutcome,
)
from .pattern_rules import PatternRuleIndex
from .records import RecordStore
from .scorer import Scorer, WeightedScorer
from .state_store import AttachmentLedger

logger = logging.getLogger(__name__)

NO_CANDIDATES = "no candidates"
BELOW_THRESHOLD = "below threshold"
DOCUMENT_CONSUMED = "document already consumed this pass"
COMMIT_FAILED = "commit failed"
ALREADY_ATTACHED = "already attached"

# 紐付け済み合計が取引額をこの倍率超えたら警告
AMOUNT_WARNING_RATIO = Decimal("1.10")


def _validate_id(value, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} が不正です: {value!r}")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} が不正です: {value!r}")
    return value


class AssignmentEngine:
    """証憑と取引の自動紐付けエンジン

    1回のパスは開始時のスナップショットだけを使い、途中で再取得しない。
    スコアリングは並列、コミットは単一のクリティカルセクションで直列に行う。
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: AttachmentLedger,
        cfg: Optional[Dict] = None,
        scorer: Optional[Scorer] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.cfg = validate_config(merge_config(cfg))
        self.scorer = scorer or WeightedScorer.from_config(self.cfg)
        self._commit_lock = threading.Lock()

    def _rule_index(self) -> PatternRuleIndex:
        return PatternRuleIndex(
            self.store.fetch_pattern_rules(),
            amount_threshold=self.cfg["pattern"]["amount_threshold"],
        )

    def _actor(self) -> Optional[str]:
        return self.cfg.get("assignment", {}).get("actor")

    def run_automatic_assignment(
        self,
        period: Union[Period, str],
        account_id: Optional[int] = None,
        dry_run: bool = False,
    ) -> AssignmentResult:
        if isinstance(period, str):
            try:
                period = Period.parse(period)
            except ValueError as e:
                raise ValidationError(str(e))
        if account_id is not None:
            account_id = _validate_id(account_id, "account_id")

        # スナップショット。手動・自動を問わず紐付け済みの取引は対象外
        attached_tx = self.ledger.attached_transaction_ids()
        auto_docs = self.ledger.automatic_document_ids()
        transactions = [t for t in self.store.fetch_transactions(period, account_id) if t.id not in attached_tx]
        documents = self.store.fetch_documents(parsed=True)
        rule_index = self._rule_index()
        auto_threshold = self.cfg["thresholds"]["auto"]

        logger.info(
            "自動紐付け開始: 期間=%s 口座=%s 対象取引=%d件 証憑=%d件%s",
            period, account_id if account_id is not None else "全て",
            len(transactions), len(documents), " (DRY_RUN)" if dry_run else "",
        )

        def _rank(tx: Transaction) -> RankedCandidates:
            return rank_candidates(tx, documents, self.scorer, rule_index, self.cfg, auto_attached=auto_docs)

        workers = int(self.cfg["assignment"].get("workers") or 1)
        if workers > 1 and len(transactions) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                ranked_lists = list(pool.map(_rank, transactions))
        else:
            ranked_lists = [_rank(tx) for tx in transactions]

        outcomes: Dict[int, TransactionOutcome] = {}
        triples = []
        for tx, ranked in zip(transactions, ranked_lists):
            if ranked.eligible_count == 0:
                outcomes[tx.id] = TransactionOutcome(tx.id, matched=False, reason=NO_CANDIDATES)
                continue
            committable = [c for c in ranked if c.score >= auto_threshold]
            if not committable:
                best = ranked[0].score if len(ranked) else None
                outcomes[tx.id] = TransactionOutcome(tx.id, matched=False, score=best, reason=BELOW_THRESHOLD)
                continue
            triples.extend((c, tx) for c in committable)

        triples.sort(key=lambda item: (item[0].sort_key(), item[1].id))

        consumed_docs = set()
        with self._commit_lock:
            for cand, tx in triples:
                doc_id = cand.document.id
                if tx.id in outcomes or doc_id in consumed_docs:
                    continue
                if dry_run:
                    consumed_docs.add(doc_id)
                    outcomes[tx.id] = TransactionOutcome(tx.id, matched=True, document_id=doc_id, score=cand.score)
                    continue
                self._commit(tx, cand, consumed_docs, outcomes)

        result = AssignmentResult(dry_run=dry_run)
        for tx in transactions:
            outcome = outcomes.get(tx.id) or TransactionOutcome(tx.id, matched=False, reason=DOCUMENT_CONSUMED)
            result.outcomes.append(outcome)

        logger.info(
            "自動紐付け完了: 紐付け %d件 / 未紐付け %d件 %s",
            result.matched_count, result.unmatched_count, result.reason_counts(),
        )
        return result

    def _commit(self, tx: Transaction, cand: CandidateMatch, consumed_docs: set, outcomes: Dict[int, TransactionOutcome]):
        doc_id = cand.document.id
        targets = [tx.id, doc_id]
        try:
            attachment = self.ledger.claim_automatic(tx.id, doc_id, attached_by=self._actor())
        except DocumentAlreadyClaimedError as e:
            # 他パスが先に自動紐付けした証憑。取引側は次の候補へ進める
            consumed_docs.add(doc_id)
            logger.info("証憑 %s は消費済みのためスキップ: %s", doc_id, e)
            self.ledger.write_audit("INFO", self._actor(), "duplicate_skip", targets, cand.score, "skipped")
            return
        except DuplicatePairError as e:
            # スナップショット後に同じ組み合わせが登録された。取引・証憑とも消費済み
            consumed_docs.add(doc_id)
            outcomes[tx.id] = TransactionOutcome(
                tx.id, matched=False, document_id=doc_id, score=cand.score, reason=ALREADY_ATTACHED,
            )
            logger.info("取引 %s と証憑 %s は既に紐付け済み: %s", tx.id, doc_id, e)
            self.ledger.write_audit("INFO", self._actor(), "duplicate_skip", targets, cand.score, "skipped")
            return
        except sqlite3.Error as e:
            logger.error("取引 %s への証憑 %s の紐付けに失敗: %s", tx.id, doc_id, e)
            outcomes[tx.id] = TransactionOutcome(
                tx.id, matched=False, document_id=doc_id, score=cand.score,
                reason=f"{COMMIT_FAILED}: {e}",
            )
            return

        consumed_docs.add(doc_id)
        self.store.set_orphaned(doc_id, False)
        outcomes[tx.id] = TransactionOutcome(
            tx.id, matched=True, document_id=doc_id, score=cand.score, attachment_id=attachment.id,
        )
        logger.info(
            "紐付け: 取引 %s ← 証憑 %s score=%.3f 理由=%s",
            tx.id, doc_id, cand.score, cand.breakdown.reasons,
        )
        self.ledger.write_audit("INFO", self._actor(), "auto_link", targets, cand.score, "linked")

    def score_candidates(self, transaction_id, include_attached: bool = False) -> List[CandidateMatch]:
        """UI の「なぜこの候補か」表示用。読み取りのみ"""
        transaction_id = _validate_id(transaction_id, "transaction_id")
        tx = self.store.get_transaction(transaction_id)
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        ranked = rank_candidates(
            tx,
            self.store.fetch_documents(parsed=True),
            self.scorer,
            self._rule_index(),
            self.cfg,
            auto_attached=self.ledger.automatic_document_ids(),
            include_auto_attached=include_attached,
        )
        return ranked.candidates

    def attach_manually(self, transaction_id, document_id, actor_id: Optional[str] = None) -> Attachment:
        transaction_id = _validate_id(transaction_id, "transaction_id")
        document_id = _validate_id(document_id, "document_id")
        tx = self.store.get_transaction(transaction_id)
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        doc = self.store.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"Document {document_id} not found")

        targets = [transaction_id, document_id]
        try:
            attachment = self.ledger.insert(transaction_id, document_id, is_automatic=False, attached_by=actor_id)
        except DuplicatePairError:
            logger.warning("重複紐付けの要求: 証憑 %s は既に取引 %s に紐付け済み", document_id, transaction_id)
            self.ledger.write_audit("WARN", actor_id, "manual_link", targets, None, "duplicate")
            raise

        others = [a.transaction_id for a in self.ledger.list_by_document(document_id) if a.transaction_id != transaction_id]
        if others:
            logger.info("証憑 %s は他の取引にも紐付いています: %s", document_id, others)
        if doc.best_amount() is not None:
            summary = self.attachment_summary(transaction_id)
            if summary.total_attached_amount > summary.transaction_amount * AMOUNT_WARNING_RATIO:
                logger.warning(
                    "取引 %s: 紐付け済み合計 %s が取引額 %s を超えています",
                    transaction_id, summary.total_attached_amount, summary.transaction_amount,
                )

        self.store.set_orphaned(document_id, False)
        logger.info("手動紐付け: 取引 %s ← 証憑 %s (by %s)", transaction_id, document_id, actor_id or "不明")
        self.ledger.write_audit("INFO", actor_id, "manual_link", targets, None, "linked")
        return attachment

    def detach(self, transaction_id, document_id, actor_id: Optional[str] = None) -> Attachment:
        transaction_id = _validate_id(transaction_id, "transaction_id")
        document_id = _validate_id(document_id, "document_id")
        existing = self.ledger.find(transaction_id, document_id)
        if existing is None:
            raise NotFoundError(f"No attachment between transaction {transaction_id} and document {document_id}")
        removed = self.ledger.delete(existing.id)
        if not self.ledger.list_by_document(document_id) and self.store.get_document(document_id) is not None:
            self.store.set_orphaned(document_id, True)
        logger.info(
            "紐付け解除: 取引 %s ← 証憑 %s (紐付け元 %s, 自動=%s)",
            transaction_id, document_id, removed.attached_by or "不明", removed.is_automatic,
        )
        self.ledger.write_audit("INFO", actor_id, "unlink", [transaction_id, document_id], None, "removed")
        return removed

    def attachment_summary(self, transaction_id) -> AttachmentSummary:
        """紐付け済み証憑の合計と取引額の比較（参考情報。紐付けは妨げない）"""
        transaction_id = _validate_id(transaction_id, "transaction_id")
        tx = self.store.get_transaction(transaction_id)
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        doc_ids = [a.document_id for a in self.ledger.list_by_transaction(transaction_id)]
        total = Decimal("0")
        for doc_id in doc_ids:
            doc = self.store.get_document(doc_id)
            if doc is not None and doc.best_amount() is not None:
                total += abs(Decimal(str(doc.best_amount())))

        tx_amount = abs(Decimal(str(tx.gross_amount)))
        difference = total - tx_amount
        tolerance = Decimal(str(self.cfg["tolerances"]["amount"]))
        return AttachmentSummary(
            transaction_id=transaction_id,
            attached_document_count=len(doc_ids),
            total_attached_amount=total,
            transaction_amount=tx_amount,
            amount_difference=difference,
            has_amount_mismatch=bool(doc_ids) and abs(difference) > tolerance,
            document_ids=doc_ids,
        )
