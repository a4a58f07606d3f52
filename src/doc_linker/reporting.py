import json
from dataclasses import asdict
from pathlib import Path
from typing import Iterable, List

import pandas as pd

from .models import AssignmentResult, CandidateMatch

OUTCOME_COLUMNS = ["transaction_id", "matched", "document_id", "score", "reason", "attachment_id"]


def outcomes_frame(result: AssignmentResult) -> pd.DataFrame:
    rows = [asdict(o) for o in result.outcomes]
    return pd.DataFrame(rows, columns=OUTCOME_COLUMNS)


def candidates_frame(candidates: Iterable[CandidateMatch]) -> pd.DataFrame:
    rows = []
    for rank, c in enumerate(candidates, 1):
        row = {"rank": rank, "document_id": c.document.id, "document_name": c.document.name, "score": round(c.score, 4)}
        row.update(c.features.as_dict())
        row["reasons"] = " ".join(c.breakdown.reasons)
        rows.append(row)
    return pd.DataFrame(rows)


def mismatch_frame(engine, transaction_ids: Iterable[int]) -> pd.DataFrame:
    """紐付け済み取引の金額不一致一覧（参考情報）"""
    rows: List[dict] = []
    for tx_id in transaction_ids:
        s = engine.attachment_summary(tx_id)
        if not s.attached_document_count:
            continue
        rows.append({
            "transaction_id": s.transaction_id,
            "attached_document_count": s.attached_document_count,
            "transaction_amount": float(s.transaction_amount),
            "total_attached_amount": float(s.total_attached_amount),
            "amount_difference": float(s.amount_difference),
            "has_amount_mismatch": s.has_amount_mismatch,
        })
    columns = ["transaction_id", "attached_document_count", "transaction_amount",
               "total_attached_amount", "amount_difference", "has_amount_mismatch"]
    return pd.DataFrame(rows, columns=columns)


def summary_dict(result: AssignmentResult) -> dict:
    return {
        "matched_count": result.matched_count,
        "unmatched_count": result.unmatched_count,
        "total_processed": result.total_processed,
        "reasons": result.reason_counts(),
        "dry_run": result.dry_run,
    }


def save_results(result: AssignmentResult, path: str):
    """拡張子が .csv なら明細CSV、それ以外はサマリー付きJSONで保存"""
    p = Path(path)
    if p.suffix.lower() == ".csv":
        outcomes_frame(result).to_csv(p, index=False)
        return
    payload = summary_dict(result)
    payload["outcomes"] = [asdict(o) for o in result.outcomes]
    with open(p, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
