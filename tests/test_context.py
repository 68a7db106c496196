from __future__ import annotations

from recallmem.store import MemoryStore, build_context
from recallmem.store.context import CONTEXT_CLOSE, CONTEXT_OPEN, format_line
from recallmem.store.types import ObservationResult
from recallmem.store.utils import estimate_tokens


def _obs(observation_id: int, narrative: str, kind: str = "context") -> ObservationResult:
    return ObservationResult(
        id=observation_id,
        display_id=None,
        type=kind,
        title=narrative[:80],
        subtitle=None,
        narrative=narrative,
        facts=[],
        concepts=[],
        files_read=[],
        files_modified=[],
        project="proj",
        session_id="sess-1",
        memory_session_id=1,
        prompt_number=1,
        created_at="",
        created_at_epoch=0,
        tokens_used=0,
        is_favorite=False,
    )


# "- [context] " plus 27 chars plus the newline is 40 chars, i.e. 10 tokens.
LINE_CONTENT = "alpha content goes here 00{}"


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_block_format() -> None:
    block = build_context([_obs(1, "use  ruff\nfor linting", "decision")], max_observations=5, max_tokens=200)
    assert block.text == f"{CONTEXT_OPEN}\n- [decision] use ruff for linting\n{CONTEXT_CLOSE}"
    assert [item.observation_id for item in block.items] == [1]
    assert block.token_count == estimate_tokens(block.text)


def test_budget_is_never_exceeded() -> None:
    candidates = [_obs(i, LINE_CONTENT.format(i)) for i in range(1, 4)]
    assert estimate_tokens(format_line("context", candidates[0].narrative) + "\n") == 10

    block = build_context(candidates, max_observations=10, max_tokens=30)

    assert [item.observation_id for item in block.items] == [1, 2]
    assert block.token_count <= 30


def test_walk_stops_at_first_oversized_record() -> None:
    candidates = [
        _obs(1, LINE_CONTENT.format(1)),
        _obs(2, "x" * 400),
        _obs(3, LINE_CONTENT.format(3)),
    ]
    block = build_context(candidates, max_observations=10, max_tokens=40)
    assert [item.observation_id for item in block.items] == [1]


def test_duplicates_are_skipped_without_cost() -> None:
    candidates = [
        _obs(1, "Prefer pytest fixtures"),
        _obs(2, "  prefer   PYTEST fixtures "),
        _obs(3, "Use sqlite"),
    ]
    block = build_context(candidates, max_observations=2, max_tokens=200)
    assert [item.observation_id for item in block.items] == [1, 3]
    assert block.skipped_duplicates == 1


def test_max_observations_caps_items() -> None:
    candidates = [_obs(i, f"distinct memory number {i}") for i in range(1, 6)]
    block = build_context(candidates, max_observations=2, max_tokens=1000)
    assert len(block.items) == 2


def test_budget_below_overhead_is_empty() -> None:
    block = build_context([_obs(1, "anything")], max_observations=5, max_tokens=10)
    assert block.empty
    assert block.text == ""
    assert block.token_count == 0


def test_store_build_context_uses_config_defaults(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    store.add_observation("sess-1", type="preference", narrative="I prefer tabs")
    block = store.build_context(store.recent(10))
    assert block.text.splitlines()[1] == "- [preference] I prefer tabs"
    assert block.token_count <= store.config.context_max_tokens
