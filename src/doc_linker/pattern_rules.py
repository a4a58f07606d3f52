"""
定期的な取引先のパターンルール
振込先 + 摘要パターン（+ 金額一致）で紐付けを後押しする
"""

import logging
import re
from typing import Dict, Iterable, List, Optional

from .models import PatternRule, Transaction
from .text_utils import normalize_name

logger = logging.getLogger(__name__)


def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("摘要パターンが正規表現として不正のため部分一致で扱います: %r (%s)", pattern, e)
        return None


class PatternRuleIndex:
    """振込先（正規化済み）ごとにルールを引けるようにした読み取り専用インデックス"""

    def __init__(self, rules: Iterable[PatternRule] = (), amount_threshold: float = 0.98):
        self.amount_threshold = amount_threshold
        self._by_receiver: Dict[str, List[tuple]] = {}
        for rule in rules:
            key = normalize_name(rule.receiver)
            if not key:
                continue
            self._by_receiver.setdefault(key, []).append((rule, _compile(rule.comment_pattern)))

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_receiver.values())

    def rules_for(self, receiver: str) -> List[PatternRule]:
        return [r for r, _ in self._by_receiver.get(normalize_name(receiver), [])]

    def matches(self, tx: Transaction, amount_similarity: float) -> Optional[PatternRule]:
        entries = self._by_receiver.get(normalize_name(tx.sender_receiver))
        if not entries:
            return None
        note = tx.note or ""
        for rule, compiled in entries:
            if compiled is not None:
                hit = compiled.search(note) is not None
            else:
                hit = rule.comment_pattern.casefold() in note.casefold()
            if not hit:
                continue
            if rule.amount_must_match and amount_similarity < self.amount_threshold:
                continue
            return rule
        return None
