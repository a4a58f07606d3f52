import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from .errors import DocumentAlreadyClaimedError, DuplicatePairError, NotFoundError
from .models import Attachment


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("ATTACHMENT_LEDGER_DB", "attachment_ledger.db")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_attachment(row) -> Attachment:
    return Attachment(
        id=row["id"],
        transaction_id=row["transaction_id"],
        document_id=row["document_id"],
        attached_at=datetime.fromisoformat(row["attached_at"]),
        attached_by=row["attached_by"],
        is_automatic=bool(row["is_automatic"]),
    )


class AttachmentLedger:
    """取引↔証憑の紐付け台帳（追記のみ、更新しない）

    (transaction_id, document_id) の一意制約が並行実行時の唯一の直列化ポイント。
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _get_db_path()
        self.init_db()

    @contextmanager
    def _conn(self, immediate: bool = False):
        con = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        con.row_factory = sqlite3.Row
        try:
            con.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield con
            con.execute("COMMIT")
        except Exception:
            if con.in_transaction:
                con.execute("ROLLBACK")
            raise
        finally:
            con.close()

    def init_db(self):
        con = sqlite3.connect(self.db_path, timeout=30)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS attachments (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  transaction_id INTEGER NOT NULL,
                  document_id INTEGER NOT NULL,
                  attached_at TEXT NOT NULL,
                  attached_by TEXT,
                  is_automatic INTEGER NOT NULL DEFAULT 0,
                  UNIQUE (transaction_id, document_id)
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS ix_attachments_document ON attachments(document_id);")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  ts TEXT,
                  level TEXT,
                  actor TEXT,
                  action TEXT,
                  target_ids TEXT,
                  score REAL,
                  result TEXT,
                  error TEXT
                );
                """
            )
            con.commit()
        finally:
            con.close()

    def _insert(self, con, transaction_id: int, document_id: int, is_automatic: bool, attached_by: Optional[str]) -> Attachment:
        attached_at = _now()
        try:
            cur = con.execute(
                "INSERT INTO attachments(transaction_id, document_id, attached_at, attached_by, is_automatic) VALUES (?,?,?,?,?)",
                (transaction_id, document_id, attached_at, attached_by, 1 if is_automatic else 0),
            )
        except sqlite3.IntegrityError:
            raise DuplicatePairError(transaction_id, document_id)
        return Attachment(
            id=cur.lastrowid,
            transaction_id=transaction_id,
            document_id=document_id,
            attached_at=datetime.fromisoformat(attached_at),
            attached_by=attached_by,
            is_automatic=is_automatic,
        )

    def insert(self, transaction_id: int, document_id: int, is_automatic: bool = False, attached_by: Optional[str] = None) -> Attachment:
        with self._conn() as con:
            return self._insert(con, transaction_id, document_id, is_automatic, attached_by)

    def claim_automatic(self, transaction_id: int, document_id: int, attached_by: Optional[str] = None) -> Attachment:
        """証憑が未だ自動紐付けされていなければ紐付ける（compare-and-set）"""
        with self._conn(immediate=True) as con:
            cur = con.execute(
                "SELECT 1 FROM attachments WHERE document_id=? AND is_automatic=1 LIMIT 1",
                (document_id,),
            )
            if cur.fetchone() is not None:
                raise DocumentAlreadyClaimedError(transaction_id, document_id)
            return self._insert(con, transaction_id, document_id, True, attached_by)

    def delete(self, attachment_id: int) -> Attachment:
        with self._conn(immediate=True) as con:
            row = con.execute("SELECT * FROM attachments WHERE id=?", (attachment_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Attachment {attachment_id} not found")
            con.execute("DELETE FROM attachments WHERE id=?", (attachment_id,))
            return _row_to_attachment(row)

    def get(self, attachment_id: int) -> Optional[Attachment]:
        with self._conn() as con:
            row = con.execute("SELECT * FROM attachments WHERE id=?", (attachment_id,)).fetchone()
            return _row_to_attachment(row) if row else None

    def find(self, transaction_id: int, document_id: int) -> Optional[Attachment]:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM attachments WHERE transaction_id=? AND document_id=?",
                (transaction_id, document_id),
            ).fetchone()
            return _row_to_attachment(row) if row else None

    def list_by_transaction(self, transaction_id: int) -> List[Attachment]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM attachments WHERE transaction_id=? ORDER BY attached_at, id",
                (transaction_id,),
            ).fetchall()
            return [_row_to_attachment(r) for r in rows]

    def list_by_document(self, document_id: int) -> List[Attachment]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM attachments WHERE document_id=? ORDER BY attached_at, id",
                (document_id,),
            ).fetchall()
            return [_row_to_attachment(r) for r in rows]

    def list_all(self) -> List[Attachment]:
        with self._conn() as con:
            rows = con.execute("SELECT * FROM attachments ORDER BY id").fetchall()
            return [_row_to_attachment(r) for r in rows]

    def attached_transaction_ids(self) -> Set[int]:
        """手動・自動を問わず紐付けを持つ取引ID"""
        with self._conn() as con:
            rows = con.execute("SELECT DISTINCT transaction_id FROM attachments").fetchall()
            return {r[0] for r in rows}

    def automatic_document_ids(self) -> Set[int]:
        with self._conn() as con:
            rows = con.execute("SELECT DISTINCT document_id FROM attachments WHERE is_automatic=1").fetchall()
            return {r[0] for r in rows}

    def write_audit(self, level: str, actor: Optional[str], action: str, target_ids: list,
                    score: Optional[float], result: str, error: Optional[str] = None):
        with self._conn() as con:
            con.execute(
                "INSERT INTO audit_log(ts, level, actor, action, target_ids, score, result, error) VALUES (?,?,?,?,?,?,?,?)",
                (_now(), level, actor or "system", action, json.dumps([str(t) for t in target_ids]), score, result, error),
            )

    def list_audit(self, action: Optional[str] = None) -> List[Dict]:
        with self._conn() as con:
            if action:
                rows = con.execute("SELECT * FROM audit_log WHERE action=? ORDER BY rowid", (action,)).fetchall()
            else:
                rows = con.execute("SELECT * FROM audit_log ORDER BY rowid").fetchall()
        out = []
        for r in rows:
            item = dict(r)
            item["target_ids"] = json.loads(item["target_ids"] or "[]")
            out.append(item)
        return out
