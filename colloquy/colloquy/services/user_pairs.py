"""
Who argued with whom.

Builds the reply forest of a topic from parent pointers and pairs the
authors on either end of every reply edge. Authors that merely posted in
the same topic are not paired.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID


class DocumentNode(Protocol):
    id: UUID
    author_id: UUID
    parent_id: UUID | None
    created_at: datetime


@dataclass
class UserPair:
    user_id1: UUID
    user_id2: UUID
    document_ids: list[UUID] = field(default_factory=list)
    discussion_paths: list[dict[str, Any]] = field(default_factory=list)

    @property
    def key(self) -> tuple[UUID, UUID]:
        return self.user_id1, self.user_id2


def canonical_pair(a: UUID, b: UUID) -> tuple[UUID, UUID]:
    return (a, b) if a < b else (b, a)


class ReplyForest:
    """
    Parent links of a topic's documents.

    Pointers to documents outside the set are ignored, leaving the document
    a root. Every root other than
    the earliest one is attached to the earliest root, as a reply to the
    topic's opening document.
    """

    def __init__(self, documents: Iterable[DocumentNode]):
        self.documents = {d.id: d for d in documents}
        self.parent: dict[UUID, UUID] = {}

        roots = []
        for doc in self.documents.values():
            if doc.parent_id is None or doc.parent_id not in self.documents or doc.parent_id == doc.id:
                roots.append(doc)
            else:
                self.parent[doc.id] = doc.parent_id

        roots.sort(key=lambda d: (d.created_at, str(d.id)))
        self.original = roots[0] if roots else None
        for extra in roots[1:]:
            self.parent[extra.id] = self.original.id

    def edges(self) -> list[tuple[DocumentNode, DocumentNode]]:
        """(parent, child) pairs in child creation order."""
        children = sorted(
            (self.documents[c] for c in self.parent),
            key=lambda d: (d.created_at, str(d.id)),
        )
        return [(self.documents[self.parent[c.id]], c) for c in children]

    def ancestors(self, document_id: UUID) -> list[UUID]:
        chain = []
        seen = {document_id}
        current = self.parent.get(document_id)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self.parent.get(current)
        return chain

    def depth(self, document_id: UUID) -> int:
        return len(self.ancestors(document_id))

    def is_ancestor(self, ancestor_id: UUID, descendant_id: UUID) -> bool:
        return ancestor_id in self.ancestors(descendant_id)


def identify_user_pairs(documents: Sequence[DocumentNode]) -> list[UserPair]:
    """One UserPair per pair of distinct authors joined by at least one reply edge."""
    forest = ReplyForest(documents)
    pairs: dict[tuple[UUID, UUID], UserPair] = {}

    for parent, child in forest.edges():
        if parent.author_id == child.author_id:
            continue

        user_id1, user_id2 = canonical_pair(parent.author_id, child.author_id)
        pair = pairs.setdefault((user_id1, user_id2), UserPair(user_id1, user_id2))

        for doc_id in (parent.id, child.id):
            if doc_id not in pair.document_ids:
                pair.document_ids.append(doc_id)

        pair.discussion_paths.append(
            {
                "path": [str(parent.id), str(child.id)],
                "depth": forest.depth(child.id),
                "direction": "user1_to_user2" if child.author_id == user_id1 else "user2_to_user1",
            }
        )

    return sorted(pairs.values(), key=lambda p: (str(p.user_id1), str(p.user_id2)))


def pair_documents(
    documents: Sequence[DocumentNode], user_a: UUID, user_b: UUID
) -> list[DocumentNode]:
    """Documents on reply edges between the two users, in creation order."""
    user_id1, user_id2 = canonical_pair(user_a, user_b)
    for pair in identify_user_pairs(documents):
        if pair.key == (user_id1, user_id2):
            by_id = {d.id: d for d in documents}
            return sorted(
                (by_id[i] for i in pair.document_ids),
                key=lambda d: (d.created_at, str(d.id)),
            )
    return []
