import re
import unicodedata

from rapidfuzz import fuzz

# 会社形態の表記は名寄せの邪魔になるので除去する
LEGAL_FORMS = {
    "gmbh", "mbh", "ag", "kg", "ohg", "ug", "gbr", "ev", "co",
    "ltd", "inc", "llc", "corp", "plc", "sa", "sarl", "bv", "se",
}

_PUNCT = re.compile(r"[.,;:!?()\[\]{}\"'&/\\_+*-]")
_SPACES = re.compile(r"\s+")


def strip_diacritics(text: str) -> str:
    text = text.replace("ß", "ss").replace("ẞ", "SS")
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_text(text: str) -> str:
    if not text:
        return ""
    s = strip_diacritics(text).casefold()
    s = _PUNCT.sub(" ", s)
    s = _SPACES.sub(" ", s)
    return s.strip()


def normalize_name(text: str) -> str:
    s = normalize_text(text)
    if not s:
        return ""
    tokens = [t for t in s.split(" ") if t not in LEGAL_FORMS]
    # 会社形態だけの名前はそのまま残す
    return " ".join(tokens) if tokens else s


def name_similarity(a: str, b: str) -> float:
    """正規化済みの名前同士の類似度（0.0〜1.0）

    完全一致 1.0 > 単語単位の包含 0.9 > token_sort_ratio
    """
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if f" {a} " in f" {b} " or f" {b} " in f" {a} ":
        return 0.9
    sim = fuzz.token_sort_ratio(a, b) / 100.0
    return max(0.0, min(0.9, sim))


def contains_token(haystack: str, needle: str) -> bool:
    """needle が英数字に挟まれずに haystack に現れるか（大文字小文字無視）"""
    if not haystack or not needle:
        return False
    pattern = r"(?<![0-9a-z])" + re.escape(needle.casefold()) + r"(?![0-9a-z])"
    return re.search(pattern, haystack.casefold()) is not None
