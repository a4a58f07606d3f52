class LinkerError(Exception):
    """doc_linker の例外の基底クラス"""


class ValidationError(LinkerError, ValueError):
    """境界での入力不正（ID の形式など）。単一リクエストのみを拒否する"""


class ConfigError(ValidationError):
    """マッチング設定の不正（重みの合計など）"""


class NotFoundError(LinkerError, LookupError):
    """参照された取引・証憑・紐付けが存在しない"""


class DuplicatePairError(LinkerError):
    """(取引, 証憑) の組み合わせが既に台帳に存在する"""

    def __init__(self, transaction_id: int, document_id: int, message: str = None):
        self.transaction_id = transaction_id
        self.document_id = document_id
        super().__init__(
            message or f"Document {document_id} is already attached to transaction {transaction_id}"
        )


class DocumentAlreadyClaimedError(DuplicatePairError):
    """証憑が既に別の取引へ自動紐付け済み（並行実行で先を越された）"""

    def __init__(self, transaction_id: int, document_id: int):
        super().__init__(
            transaction_id,
            document_id,
            f"Document {document_id} already carries an automatic attachment",
        )
