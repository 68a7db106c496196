from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ValidationError


@dataclass(frozen=True)
class TextPayload:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class StructuredPayload:
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": "structured", "data": self.data}


Payload = TextPayload | StructuredPayload


def parse_payload(raw: Any) -> Payload:
    """Validate a wire payload into one of the two result shapes."""
    if not isinstance(raw, dict):
        raise ValidationError("payload must be an object")
    kind = raw.get("type")
    if kind == "text":
        text = raw.get("text")
        if not isinstance(text, str):
            raise ValidationError("text payload requires a string 'text'")
        return TextPayload(text=text)
    if kind == "structured":
        data = raw.get("data")
        if not isinstance(data, dict):
            raise ValidationError("structured payload requires an object 'data'")
        return StructuredPayload(data=data)
    raise ValidationError(f"unknown payload type: {kind!r}")
