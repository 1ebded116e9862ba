"""Deterministic fingerprints of trace content and aggregation inputs."""

import hashlib
import json
from collections.abc import Iterable
from typing import Any

CITATION_HASH_FIELDS = ("url", "title", "quote", "author", "year")


def _citation_field(citation: Any, field: str) -> Any:
    if isinstance(citation, dict):
        return citation.get(field)
    return getattr(citation, field, None)


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(body: str, citations: Iterable[Any]) -> str:
    """
    SHA-256 hex digest of a trace's body plus its ordered citations.

    Only url, title, quote, author and year take part; ids, order numbers and
    timestamps do not. Citations may be ORM rows, dicts or pydantic models.
    """
    payload = {
        "body": body,
        "citations": [
            {field: _citation_field(c, field) for field in CITATION_HASH_FIELDS}
            for c in citations
        ],
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def fingerprint(value: Any) -> str:
    """SHA-256 of any JSON-serializable structure."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
