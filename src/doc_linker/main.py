#!/usr/bin/env python
"""
証憑-取引 紐付けのコマンドライン
  run        期間内の未紐付け取引を自動紐付け
  candidates 取引ごとの候補とスコア内訳を表示
  attach     手動紐付け
  detach     紐付け解除
  summary    紐付け済み金額の確認
"""

import argparse
import logging
import os
import sys
from datetime import datetime

from dotenv import load_dotenv

from .config_loader import load_linking_config
from .errors import LinkerError
from .linker import AssignmentEngine
from .records import load_records
from .reporting import candidates_frame, save_results
from .state_store import AttachmentLedger


def setup_logging(level: str = None):
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="doc-linker")
    parser.add_argument("--records", default=os.getenv("LINKER_RECORDS"), help="取引・証憑データ (JSON/YAML)")
    parser.add_argument("--db", default=os.getenv("ATTACHMENT_LEDGER_DB"), help="紐付け台帳のsqliteファイル")
    parser.add_argument("--config", default=None, help="マッチング設定 (YAML)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run")
    run.add_argument("--period", required=True, help="対象期間 (YYYY-MM)")
    run.add_argument("--account-id", type=int)
    run.add_argument("--dry-run", action="store_true", default=os.getenv("DRY_RUN", "false").lower() == "true")
    run.add_argument("--output", help="結果の保存先 (.csv / .json)")

    cand = sub.add_parser("candidates")
    cand.add_argument("--transaction-id", required=True)
    cand.add_argument("--include-attached", action="store_true")

    attach = sub.add_parser("attach")
    attach.add_argument("--transaction-id", required=True)
    attach.add_argument("--document-id", required=True)
    attach.add_argument("--actor", default=os.getenv("LINKER_ACTOR"))

    detach = sub.add_parser("detach")
    detach.add_argument("--transaction-id", required=True)
    detach.add_argument("--document-id", required=True)
    detach.add_argument("--actor", default=os.getenv("LINKER_ACTOR"))

    summary = sub.add_parser("summary")
    summary.add_argument("--transaction-id", required=True)
    return parser


def _run(engine: AssignmentEngine, args) -> int:
    print("=== 証憑の自動紐付けを開始します ===")
    print(f"実行時刻: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    if args.dry_run:
        print("\n*** DRY_RUNモード: 台帳への書き込みは行いません ***\n")

    result = engine.run_automatic_assignment(args.period, args.account_id, dry_run=args.dry_run)

    print("\n=== 処理完了 ===")
    print(f"  紐付け: {result.matched_count}件")
    print(f"  未紐付け: {result.unmatched_count}件")
    for reason, count in sorted(result.reason_counts().items()):
        print(f"    - {reason}: {count}件")
    if args.output:
        save_results(result, args.output)
        print(f"結果を保存しました: {args.output}")
    return 0


def main(argv=None) -> int:
    load_dotenv()
    setup_logging()
    args = build_parser().parse_args(argv)

    if not args.records:
        print("エラー: --records または LINKER_RECORDS を指定してください")
        return 2

    try:
        engine = AssignmentEngine(
            load_records(args.records),
            AttachmentLedger(args.db),
            cfg=load_linking_config(args.config),
        )
        if args.command == "run":
            return _run(engine, args)
        if args.command == "candidates":
            frame = candidates_frame(engine.score_candidates(args.transaction_id, args.include_attached))
            print("候補なし" if frame.empty else frame.to_string(index=False))
            return 0
        if args.command == "attach":
            att = engine.attach_manually(args.transaction_id, args.document_id, args.actor)
            print(f"✅ 紐付けました: 取引 {att.transaction_id} ← 証憑 {att.document_id} (id={att.id})")
            return 0
        if args.command == "detach":
            att = engine.detach(args.transaction_id, args.document_id, args.actor)
            print(f"🔓 紐付けを解除しました: 取引 {att.transaction_id} ← 証憑 {att.document_id}")
            return 0
        if args.command == "summary":
            s = engine.attachment_summary(args.transaction_id)
            print(f"取引 {s.transaction_id}: 証憑 {s.attached_document_count}件")
            print(f"  取引額: {s.transaction_amount} / 証憑合計: {s.total_attached_amount} / 差額: {s.amount_difference}")
            if s.has_amount_mismatch:
                print("  ⚠️ 金額が一致しません")
            return 0
    except (LinkerError, OSError) as e:
        print(f"❌ エラー: {e}")
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
