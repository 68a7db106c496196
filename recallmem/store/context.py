from __future__ import annotations

from collections.abc import Sequence

from .types import ContextBlock, ContextItem, ObservationResult
from .utils import estimate_tokens, normalize_content

CONTEXT_OPEN = "<recalled_context>"
CONTEXT_CLOSE = "</recalled_context>"


def format_line(observation_type: str, content: str) -> str:
    return f"- [{observation_type}] {' '.join(content.split())}"


def build_context(
    candidates: Sequence[ObservationResult],
    *,
    max_observations: int,
    max_tokens: int,
) -> ContextBlock:
    """Pack ranked candidates into a bounded context block.

    Walks candidates in the order given and stops at the first one that
    would break either budget. Entries whose normalized content was already
    included are skipped without being charged.
    """
    empty = ContextBlock(text="", items=[], token_count=0)
    if max_observations <= 0 or max_tokens <= 0 or not candidates:
        return empty

    # Per-line ceilings add up to at least the ceiling of the joined text.
    overhead = estimate_tokens(CONTEXT_OPEN + "\n") + estimate_tokens(CONTEXT_CLOSE)
    if overhead >= max_tokens:
        return empty

    used = overhead
    seen: set[str] = set()
    skipped = 0
    items: list[ContextItem] = []
    lines: list[str] = []
    for candidate in candidates:
        if len(items) >= max_observations:
            break
        content = candidate.content
        key = normalize_content(content)
        if not key:
            continue
        if key in seen:
            skipped += 1
            continue
        line = format_line(candidate.type, content)
        cost = estimate_tokens(line + "\n")
        if used + cost > max_tokens:
            break
        seen.add(key)
        used += cost
        lines.append(line)
        items.append(
            ContextItem(
                observation_id=candidate.id,
                type=candidate.type,
                content=content,
                tokens=cost,
            )
        )

    if not items:
        return ContextBlock(text="", items=[], token_count=0, skipped_duplicates=skipped)
    text = "\n".join([CONTEXT_OPEN, *lines, CONTEXT_CLOSE])
    return ContextBlock(
        text=text,
        items=items,
        token_count=estimate_tokens(text),
        skipped_duplicates=skipped,
    )
