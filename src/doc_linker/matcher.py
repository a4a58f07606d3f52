import logging
from concurrent.futures import Executor
from typing import Collection, Dict, Iterable, List, Optional

from .config_loader import DEFAULTS
from .features import extract_features
from .models import CandidateMatch, Document, RankedCandidates, Transaction
from .pattern_rules import PatternRuleIndex
from .scorer import Scorer

logger = logging.getLogger(__name__)


def eligible_documents(
    documents: Iterable[Document],
    consumed: Collection[int] = (),
    auto_attached: Collection[int] = (),
    include_auto_attached: bool = False,
) -> List[Document]:
    out = []
    for doc in documents:
        if not doc.parsed or doc.id in consumed:
            continue
        if not include_auto_attached and doc.id in auto_attached:
            continue
        out.append(doc)
    return out


def score_pair(
    tx: Transaction,
    doc: Document,
    scorer: Scorer,
    rule_index: Optional[PatternRuleIndex],
    cfg: Dict,
) -> CandidateMatch:
    features = extract_features(tx, doc, rule_index, cfg)
    breakdown = scorer.breakdown(features)
    return CandidateMatch(document=doc, score=breakdown.composite_score, features=features, breakdown=breakdown)


def rank_candidates(
    tx: Transaction,
    documents: Iterable[Document],
    scorer: Scorer,
    rule_index: Optional[PatternRuleIndex] = None,
    cfg: Optional[Dict] = None,
    consumed: Collection[int] = (),
    auto_attached: Collection[int] = (),
    include_auto_attached: bool = False,
    executor: Optional[Executor] = None,
) -> RankedCandidates:
    """取引に対する証憑候補をスコア降順で返す

    同点は日付差の小さい順、さらに証憑IDの小さい順。
    min_candidate 未満は除外する（空リストは「候補なし」を意味し、エラーではない）。
    """
    cfg = cfg or DEFAULTS
    min_score = cfg.get("thresholds", {}).get("min_candidate", 0.3)
    pool = eligible_documents(documents, consumed, auto_attached, include_auto_attached)

    if executor is not None and len(pool) > 1:
        scored = list(executor.map(lambda d: score_pair(tx, d, scorer, rule_index, cfg), pool))
    else:
        scored = [score_pair(tx, d, scorer, rule_index, cfg) for d in pool]

    candidates = [c for c in scored if c.score >= min_score]
    candidates.sort(key=CandidateMatch.sort_key)

    if candidates:
        best = candidates[0]
        logger.debug(
            "取引 %s: ベスト候補 証憑 %s score=%.3f 理由=%s",
            tx.id, best.document.id, best.score, best.breakdown.reasons,
        )
    else:
        logger.debug("取引 %s: 候補なし (対象証憑 %d件, min_candidate=%s)", tx.id, len(pool), min_score)
    return RankedCandidates(candidates=candidates, eligible_count=len(pool))
