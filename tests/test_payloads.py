from __future__ import annotations

import pytest

from recallmem.errors import ValidationError
from recallmem.payloads import StructuredPayload, TextPayload, parse_payload


def test_parse_known_payloads() -> None:
    assert parse_payload({"type": "text", "text": "hi"}) == TextPayload(text="hi")
    assert parse_payload({"type": "structured", "data": {"count": 1}}) == StructuredPayload(
        data={"count": 1}
    )
    assert TextPayload(text="hi").to_dict() == {"type": "text", "text": "hi"}


@pytest.mark.parametrize(
    "raw",
    [
        "text",
        {"type": "binary", "data": {}},
        {"type": "text", "text": 3},
        {"type": "structured", "data": [1, 2]},
        {},
    ],
)
def test_parse_rejects_malformed(raw: object) -> None:
    with pytest.raises(ValidationError):
        parse_payload(raw)
