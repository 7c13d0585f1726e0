"""检索结果后处理策略

将远程记忆服务返回的原始结果整理为可放入 prompt 的上下文列表：

    min_score 过滤 → 去重 → 得分/时间交错选取 → 句子裁剪 → token 预算

纯函数，无 I/O；相同输入得到相同输出。
"""
import hashlib
import re
import unicodedata
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from config.logging import get_logger
from config.settings import RetrievalConfig
from schemas.memory import MemoryEntry, RetrievalMetadata, RetrievalPayload
from services.tokens import chars_for_tokens, estimate_tokens

logger = get_logger(__name__)

ELLIPSIS = "..."

_WHITESPACE_RE = re.compile(r"\s+")
# 句子：非终止符序列 + 一串终止符（或文本结尾）
_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize_content(text: str) -> str:
    """NFKC + lowercase + collapse whitespace + strip boundary punctuation."""
    text = unicodedata.normalize("NFKC", text).lower()
    text = _WHITESPACE_RE.sub(" ", text).strip()

    start, end = 0, len(text)
    while start < end and _is_boundary_char(text[start]):
        start += 1
    while end > start and _is_boundary_char(text[end - 1]):
        end -= 1
    return text[start:end]


def _is_boundary_char(ch: str) -> bool:
    return ch.isspace() or unicodedata.category(ch).startswith("P")


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def deduplicate(entries: Iterable[MemoryEntry]) -> List[MemoryEntry]:
    """Drop entries whose normalized content was already seen, keeping input order."""
    seen: Set[str] = set()
    unique = []
    for entry in entries:
        digest = content_hash(entry.content)
        if digest in seen:
            continue
        seen.add(digest)
        unique.append(entry)
    return unique


def _timestamp_key(entry: MemoryEntry) -> datetime:
    ts = entry.timestamp
    if ts is None:
        return _EPOCH
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def interleave(entries: List[MemoryEntry], top_k: int) -> List[MemoryEntry]:
    """Alternate between score order (even positions) and recency order (odd positions).

    Both sorts are stable, so ties keep the deduplicated input order. Entries
    without a timestamp sort last in recency order.
    """
    by_score = sorted(entries, key=lambda e: e.score, reverse=True)
    by_recency = sorted(
        entries,
        key=lambda e: (e.timestamp is not None, _timestamp_key(e)),
        reverse=True,
    )

    chosen: List[MemoryEntry] = []
    chosen_ids: Set[str] = set()
    cursors = [0, 0]
    sources = [by_score, by_recency]

    while len(chosen) < top_k:
        preferred = len(chosen) % 2
        entry = _next_unchosen(sources[preferred], cursors, preferred, chosen_ids)
        if entry is None:
            other = 1 - preferred
            entry = _next_unchosen(sources[other], cursors, other, chosen_ids)
        if entry is None:
            break
        chosen.append(entry)
        chosen_ids.add(entry.id)

    return chosen


def _next_unchosen(source, cursors, idx, chosen_ids) -> Optional[MemoryEntry]:
    while cursors[idx] < len(source):
        entry = source[cursors[idx]]
        cursors[idx] += 1
        if entry.id not in chosen_ids:
            return entry
    return None


def clip_sentences(text: str, max_sentences: int) -> str:
    """Keep the first ``max_sentences`` sentences, marking dropped text with an ellipsis."""
    matches = [m for m in _SENTENCE_RE.finditer(text) if m.group().strip()]
    if len(matches) <= max_sentences:
        return text
    kept = text[:matches[max_sentences - 1].end()].rstrip()
    return kept + ELLIPSIS


class RetrievalPolicyEngine:
    """Shapes raw memory search results into a token-budgeted context list."""

    def process(
        self,
        raw_results: List[MemoryEntry],
        cfg: RetrievalConfig,
        query_time_ms: float = 0.0,
    ) -> RetrievalPayload:
        """Run the full policy pipeline.

        Args:
            raw_results: Entries as returned by the memory service.
            cfg: Retrieval configuration.
            query_time_ms: Measured search latency, copied into metadata.

        Returns:
            RetrievalPayload whose estimated tokens never exceed cfg.max_tokens.
        """
        total = len(raw_results)
        applied = [f"min_score:{cfg.min_score}"]

        candidates = [e for e in raw_results if e.score >= cfg.min_score]

        candidates = deduplicate(candidates)
        applied.append("dedupe:sha256")

        selected = interleave(candidates, cfg.top_k)
        applied.append(f"interleave:top_k={cfg.top_k}")

        clipped = [self._clip(e, cfg.clip_sentences) for e in selected]
        applied.append(f"clip:{cfg.clip_sentences}")

        budgeted, used = self._enforce_budget(clipped, cfg.max_tokens)
        applied.append(f"budget:{cfg.max_tokens}")

        if total and not budgeted:
            logger.debug(f"[RETRIEVAL] All {total} results filtered out (min_score={cfg.min_score})")

        return RetrievalPayload(
            memories=budgeted,
            metadata=RetrievalMetadata(
                query_time_ms=query_time_ms,
                total_results=total,
                included_results=len(budgeted),
                total_tokens=used,
                applied_filters=applied,
            ),
        )

    @staticmethod
    def _clip(entry: MemoryEntry, max_sentences: int) -> MemoryEntry:
        clipped = clip_sentences(entry.content, max_sentences)
        provenance = entry.provenance.model_copy(
            update={"original_length": len(entry.content)}
        )
        return entry.model_copy(update={"content": clipped, "provenance": provenance})

    @staticmethod
    def _enforce_budget(entries: List[MemoryEntry], max_tokens: int):
        kept: List[MemoryEntry] = []
        used = 0
        for entry in entries:
            remaining = max_tokens - used
            if remaining <= 0:
                break
            tokens = estimate_tokens(entry.content)
            if tokens <= remaining:
                kept.append(entry)
                used += tokens
                continue
            # 溢出条目：截断为恰好填满剩余预算的前缀，然后停止
            prefix = entry.content[:chars_for_tokens(remaining)]
            kept.append(entry.model_copy(update={"content": prefix}))
            used += estimate_tokens(prefix)
            break
        return kept, used
