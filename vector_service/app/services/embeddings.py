import hashlib
import logging
import math
import re
from typing import Any, Iterable


logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_TOK_RE = re.compile(r"[a-z0-9\u3040-\u30ff\u4e00-\u9fff]{2,}")
_STOP = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "for",
    "from",
    "in",
    "is",
    "it",
    "of",
    "on",
    "or",
    "that",
    "the",
    "this",
    "to",
    "with",
    "who",
    "you",
    "your",
}


def normalize_text(text: str) -> str:
    t = (text or "").strip()
    t = _WS_RE.sub(" ", t)
    return t


def text_hash(*, text: str, model: str) -> str:
    blob = f"{model}\n{text}".encode("utf-8", errors="ignore")
    return hashlib.sha256(blob).hexdigest()


def truncate_head(text: str, max_chars: int) -> str:
    """Keep the first `max_chars` characters. Deterministic for the same input."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars]


def repair_dimension(values: list[float], dimension: int) -> tuple[list[float], bool]:
    """
    Pad with zeros or truncate to `dimension`.
    Returns (vector, repaired).
    """
    n = len(values)
    if n == dimension:
        return values, False
    if n < dimension:
        return values + [0.0] * (dimension - n), True
    return values[:dimension], True


def vector_to_list(value: Any) -> list[float]:
    """Rows come back as JSON lists (SQLite) or numpy arrays (pgvector)."""
    if value is None:
        return []
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        return []


def cosine_similarity(a: list[float], b: list[float]) -> float | None:
    """
    Raw cosine similarity in [-1, 1]. None where it is undefined (empty,
    mismatched or zero-norm vectors), matching a NaN from the distance operator.
    """
    if not a or not b:
        return None
    if len(a) != len(b):
        return None
    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in zip(a, b):
        dot += x * y
        na += x * x
        nb += y * y
    if na <= 0.0 or nb <= 0.0:
        return None
    v = dot / (math.sqrt(na) * math.sqrt(nb))
    if math.isnan(v) or math.isinf(v):
        return None
    return float(v)


def clamp_score(value: Any) -> float:
    """
    Bound a similarity to [0, 1]. NaN/inf/garbage -> 0.0.
    The raw distance operator is not trusted to stay in range.
    """
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v) or math.isinf(v):
        return 0.0
    if v < 0.0:
        return 0.0
    if v > 1.0:
        return 1.0
    return v


def tokenize(text: str) -> list[str]:
    out: list[str] = []
    for m in _TOK_RE.finditer((text or "").lower()):
        w = m.group(0)
        if w in _STOP:
            continue
        out.append(w)
    return out


def lexical_rank(query: str, document: str) -> float:
    """
    Fallback for ts_rank when the store has no full-text engine:
    fraction of distinct query terms present in the document.
    """
    q_terms = set(tokenize(query))
    if not q_terms:
        return 0.0
    d_terms = set(tokenize(document))
    if not d_terms:
        return 0.0
    return len(q_terms & d_terms) / len(q_terms)


def join_nonempty(items: Iterable[Any], sep: str = ", ") -> str:
    return sep.join(str(x).strip() for x in items if x is not None and str(x).strip())
