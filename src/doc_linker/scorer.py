"""
特徴量ベクトルを1つの合成スコア（0.0〜1.0）にまとめる
学習済みモデルに差し替える場合も Scorer.score() の契約だけ守ればよい

skonto / pattern は適用できない組み合わせでは重みから外し、残りの重みで正規化する
"""

from typing import Dict, Optional

from .config_loader import DEFAULTS, WEIGHT_KEYS
from .errors import ConfigError
from .models import FeatureVector, ScoreBreakdown


def date_score(days: Optional[int], cutoff_days: int) -> float:
    """0日で1.0、cutoff_days で0.0 になる線形減衰"""
    if days is None:
        return 0.0
    return max(0.0, 1.0 - float(days) / float(cutoff_days))


class Scorer:
    def score(self, features: FeatureVector) -> float:
        raise NotImplementedError

    def breakdown(self, features: FeatureVector) -> ScoreBreakdown:
        return ScoreBreakdown(composite_score=self.score(features), contributions={})


class WeightedScorer(Scorer):
    def __init__(self, weights: Optional[Dict[str, float]] = None, date_cutoff_days: int = 30):
        weights = dict(weights if weights is not None else DEFAULTS["weights"])
        for key in WEIGHT_KEYS:
            value = weights.setdefault(key, 0.0)
            if value < 0:
                raise ConfigError(f"重み {key} が負です: {value}")
        total = sum(weights[k] for k in WEIGHT_KEYS)
        if abs(total - 1.0) > 1e-6:
            raise ConfigError(f"重みの合計は1.0である必要があります (現在: {total:.4f})")
        if date_cutoff_days <= 0:
            raise ConfigError("date_cutoff_days は1以上である必要があります")
        self.weights = {k: float(weights[k]) for k in WEIGHT_KEYS}
        self.date_cutoff_days = date_cutoff_days

    @classmethod
    def from_config(cls, cfg: Dict) -> "WeightedScorer":
        return cls(
            cfg.get("weights"),
            int(cfg.get("tolerances", {}).get("date_cutoff_days", 30)),
        )

    def _scores(self, f: FeatureVector) -> Dict[str, float]:
        return {
            "amount": f.amount_similarity,
            "vendor": f.vendor_similarity,
            "invoice_number": f.invoice_number_match,
            "pattern": f.pattern_match,
            "date": date_score(f.date_diff_days, self.date_cutoff_days),
            "skonto": f.skonto_match,
        }

    def score(self, features: FeatureVector) -> float:
        return self.breakdown(features).composite_score

    def _active_weights(self, f: FeatureVector) -> Dict[str, float]:
        weights = dict(self.weights)
        if not f.skonto_applicable:
            weights["skonto"] = 0.0
        if not f.pattern_applicable:
            weights["pattern"] = 0.0
        norm = sum(weights.values())
        if norm <= 0:
            # 適用可能な特徴量の重みが全て0なら元の重みで評価
            return dict(self.weights)
        return {k: w / norm for k, w in weights.items()}

    def breakdown(self, features: FeatureVector) -> ScoreBreakdown:
        scores = self._scores(features)
        weights = self._active_weights(features)
        contributions = {k: weights[k] * max(0.0, min(1.0, v)) for k, v in scores.items()}
        total = max(0.0, min(1.0, sum(contributions.values())))

        reasons = []
        if features.amount_similarity >= 1.0:
            reasons.append("amount≈")
        else:
            reasons.append(f"amount~{int(features.amount_similarity * 100)}")
        if features.date_diff_days is None:
            reasons.append("date_missing")
        else:
            reasons.append(f"date_diff={features.date_diff_days}days")
        reasons.append(f"vendor~{int(features.vendor_similarity * 100)}")
        if features.invoice_number_match:
            reasons.append("invoice_no=")
        if features.skonto_match:
            reasons.append("skonto=")
        if features.pattern_match:
            reasons.append("pattern_rule")

        return ScoreBreakdown(
            composite_score=total,
            contributions={k: round(v, 4) for k, v in contributions.items()},
            reasons=reasons,
        )
