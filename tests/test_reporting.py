import json

import pandas as pd

from doc_linker.linker import AssignmentEngine
from doc_linker.records import RecordStore
from doc_linker.reporting import (
    OUTCOME_COLUMNS,
    candidates_frame,
    mismatch_frame,
    outcomes_frame,
    save_results,
    summary_dict,
)


def _engine(ledger, make_tx, make_doc):
    store = RecordStore(
        [make_tx(1, sender_receiver="Acme"), make_tx(2, gross="7.00")],
        [make_doc(1, vendor_name="Acme")],
    )
    return AssignmentEngine(store, ledger)


def test_outcomes_frame_and_summary(ledger, make_tx, make_doc):
    result = _engine(ledger, make_tx, make_doc).run_automatic_assignment("2024-03")
    df = outcomes_frame(result)
    assert list(df.columns) == OUTCOME_COLUMNS
    assert len(df) == 2
    assert df.loc[df["transaction_id"] == 1, "document_id"].iloc[0] == 1

    s = summary_dict(result)
    assert s["matched_count"] == 1
    assert s["total_processed"] == 2
    assert s["dry_run"] is False


def test_candidates_frame(ledger, make_tx, make_doc):
    engine = _engine(ledger, make_tx, make_doc)
    df = candidates_frame(engine.score_candidates(1))
    assert df["rank"].tolist() == [1]
    assert "amount_similarity" in df.columns
    assert "amount≈" in df["reasons"].iloc[0]
    assert candidates_frame([]).empty


def test_mismatch_frame(ledger, make_tx, make_doc):
    engine = _engine(ledger, make_tx, make_doc)
    engine.attach_manually(2, 1)
    df = mismatch_frame(engine, [1, 2])
    assert df["transaction_id"].tolist() == [2]
    assert bool(df["has_amount_mismatch"].iloc[0])
    assert df["amount_difference"].iloc[0] == 93.0


def test_save_results(tmp_path, ledger, make_tx, make_doc):
    result = _engine(ledger, make_tx, make_doc).run_automatic_assignment("2024-03", dry_run=True)

    csv_path = tmp_path / "out.csv"
    save_results(result, str(csv_path))
    assert pd.read_csv(csv_path)["transaction_id"].tolist() == [1, 2]

    json_path = tmp_path / "out.json"
    save_results(result, str(json_path))
    payload = json.loads(json_path.read_text(encoding="utf-8"))
    assert payload["dry_run"] is True
    assert payload["matched_count"] == 1
    assert len(payload["outcomes"]) == 2
