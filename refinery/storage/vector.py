"""
REFINERY Vector Index — hashed bag-of-words retrieval.

A retrieval aid only: texts become 256-dimension L2-normalised
vectors of hashed keyword counts, compared by cosine similarity.
"""

from __future__ import annotations

import hashlib
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from refinery.similarity import extract_keywords
from refinery.storage.json_store import JsonStore

DIMENSIONS = 256
NAMESPACES = ("decisions", "findings", "deliberations")


def embed(text: str) -> list[float]:
    vector = [0.0] * DIMENSIONS
    for word in extract_keywords(text):
        digest = hashlib.md5(word.encode("utf-8")).digest()
        vector[int.from_bytes(digest[:4], "big") % DIMENSIONS] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


def cosine(a: list[float], b: list[float]) -> float:
    # Both sides are already unit length.
    return sum(x * y for x, y in zip(a, b))


@dataclass
class VectorHit:
    item_id: str
    score: float
    text: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorIndex:
    def __init__(self, store: JsonStore):
        self.store = store

    def index(self, item_id: str, namespace: str, text: str, metadata: dict[str, Any] | None = None) -> None:
        if namespace not in NAMESPACES:
            raise ValueError(f"Unknown vector namespace: {namespace}. Known: {list(NAMESPACES)}")
        self.store.upsert({
            "vector_id": f"{namespace}:{item_id}",
            "namespace": namespace,
            "item_id": item_id,
            "text": text,
            "embedding": embed(text),
            "metadata": metadata or {},
        })

    def search(self, namespace: str, text: str, top_k: int = 5) -> list[VectorHit]:
        query = embed(text)
        hits = [
            VectorHit(
                item_id=r["item_id"],
                score=round(cosine(query, r["embedding"]), 6),
                text=r.get("text", ""),
                metadata=r.get("metadata", {}),
            )
            for r in self.store.list(lambda r: r.get("namespace") == namespace)
        ]
        hits.sort(key=lambda h: (-h.score, h.item_id))
        return hits[:top_k]

    def stats(self) -> dict[str, Any]:
        counts = Counter(r.get("namespace", "?") for r in self.store.list())
        return {
            "total": sum(counts.values()),
            "dimensions": DIMENSIONS,
            "by_namespace": {ns: counts.get(ns, 0) for ns in NAMESPACES},
        }
