import os
from typing import Optional

import yaml

from .errors import ConfigError


DEFAULTS = {
    "weights": {
        "amount": 0.35,
        "vendor": 0.25,
        "invoice_number": 0.20,
        "pattern": 0.10,
        "date": 0.05,
        "skonto": 0.05,
    },
    "thresholds": {"min_candidate": 0.3, "auto": 0.3},
    "tolerances": {"amount": 0.01, "date_cutoff_days": 30},
    "pattern": {"amount_threshold": 0.98},
    "skonto": {"basis": "amount"},
    "assignment": {"workers": 4, "actor": None},
}

WEIGHT_KEYS = ("amount", "vendor", "invoice_number", "pattern", "date", "skonto")


DEFAULT_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "linking.yml")


def _number(value, key: str, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} は数値で指定してください: {value!r}")


def merge_config(cfg: Optional[dict]) -> dict:
    # shallow merge defaults
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in DEFAULTS.items()}
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def validate_config(cfg: dict) -> dict:
    for section, default in DEFAULTS.items():
        if isinstance(default, dict) and not isinstance(cfg.get(section), dict):
            raise ConfigError(f"{section} はマッピングで指定してください: {cfg.get(section)!r}")
    weights = cfg.get("weights", {})
    unknown = set(weights) - set(WEIGHT_KEYS)
    if unknown:
        raise ConfigError(f"未知の重みキー: {sorted(unknown)}")
    for key in WEIGHT_KEYS:
        value = weights.get(key, 0.0)
        if not isinstance(value, (int, float)) or value < 0:
            raise ConfigError(f"重み {key} は0以上の数値である必要があります: {value!r}")
    total = sum(float(weights.get(k, 0.0)) for k in WEIGHT_KEYS)
    if abs(total - 1.0) > 1e-6:
        raise ConfigError(f"重みの合計は1.0である必要があります (現在: {total:.4f})")

    th = cfg.get("thresholds", {})
    for key in ("min_candidate", "auto"):
        value = th.get(key)
        if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            raise ConfigError(f"thresholds.{key} は0〜1の範囲で指定してください: {value!r}")

    tol = cfg.get("tolerances", {})
    if _number(tol.get("amount", 0), "tolerances.amount") < 0:
        raise ConfigError("tolerances.amount は0以上である必要があります")
    if _number(tol.get("date_cutoff_days", 0), "tolerances.date_cutoff_days", int) <= 0:
        raise ConfigError("tolerances.date_cutoff_days は1以上である必要があります")

    if not 0.0 <= _number(cfg.get("pattern", {}).get("amount_threshold", 0.98), "pattern.amount_threshold") <= 1.0:
        raise ConfigError("pattern.amount_threshold は0〜1の範囲で指定してください")

    if cfg.get("skonto", {}).get("basis") not in ("amount", "percent"):
        raise ConfigError("skonto.basis は 'amount' か 'percent' を指定してください")

    workers = cfg.get("assignment", {}).get("workers")
    if workers is not None and _number(workers, "assignment.workers", int) < 1:
        raise ConfigError("assignment.workers は1以上である必要があります")
    return cfg


def load_linking_config(path: Optional[str] = None) -> dict:
    """明示指定 → LINKING_CONFIG → config/linking.yml の順で読む

    既定のファイルが無いときだけ DEFAULTS を使う。指定されたファイルが無ければ ConfigError。
    """
    explicit = path or os.getenv("LINKING_CONFIG")
    path = explicit or DEFAULT_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        if explicit:
            raise ConfigError(f"設定ファイルが見つかりません: {path}")
        return merge_config(None)
    except yaml.YAMLError as e:
        raise ConfigError(f"設定ファイルを解析できません: {path} ({e})")
    if not isinstance(cfg, dict):
        raise ConfigError(f"設定ファイルの形式が不正です: {path}")
    return validate_config(merge_config(cfg))
