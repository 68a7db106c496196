from __future__ import annotations

import hashlib
import logging
import os
import threading
from collections.abc import Iterable

import sqlite_vec

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"
EMBEDDING_DIMENSIONS = 384


class Embedder:
    """fastembed text model, loaded on first use."""

    def __init__(self, model: str = DEFAULT_EMBEDDING_MODEL) -> None:
        self.model = model
        self._model_lock = threading.Lock()
        self._text_embedding = None

    def _load(self):
        with self._model_lock:
            if self._text_embedding is None:
                from fastembed import TextEmbedding

                logger.info("loading embedding model %s", self.model)
                self._text_embedding = TextEmbedding(model_name=self.model)
            return self._text_embedding

    def embed(self, texts: Iterable[str]) -> list[bytes]:
        batch = [text for text in texts if text]
        if not batch:
            return []
        return [
            sqlite_vec.serialize_float32([float(value) for value in vector])
            for vector in self._load().embed(batch)
        ]


_EMBEDDERS: dict[str, Embedder] = {}
_EMBEDDERS_GUARD = threading.Lock()


def embeddings_disabled() -> bool:
    return os.getenv("RECALLMEM_EMBEDDING_DISABLED", "").lower() in {"1", "true", "yes"}


def get_embedder() -> Embedder | None:
    """Process-wide embedder, or None when embeddings are switched off."""
    if embeddings_disabled():
        return None
    model = os.getenv("RECALLMEM_EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL
    with _EMBEDDERS_GUARD:
        embedder = _EMBEDDERS.get(model)
        if embedder is None:
            embedder = Embedder(model)
            _EMBEDDERS[model] = embedder
        return embedder


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
