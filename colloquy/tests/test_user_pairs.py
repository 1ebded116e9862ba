"""Tests for reply-forest construction and user-pair identification."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from colloquy.services.user_pairs import (
    ReplyForest,
    canonical_pair,
    identify_user_pairs,
    pair_documents,
)

T0 = datetime(2026, 3, 1, 12, 0)


@dataclass
class Node:
    id: UUID
    author_id: UUID
    parent_id: UUID | None
    created_at: datetime


def node(author, parent=None, minute=0):
    return Node(
        id=uuid4(),
        author_id=author,
        parent_id=parent.id if parent else None,
        created_at=T0 + timedelta(minutes=minute),
    )


class TestReplyForest:
    def test_dangling_parent_makes_a_root(self):
        alice = uuid4()
        orphan = Node(id=uuid4(), author_id=alice, parent_id=uuid4(), created_at=T0)
        forest = ReplyForest([orphan])
        assert forest.original is orphan
        assert forest.edges() == []
        assert forest.depth(orphan.id) == 0

    def test_dangling_parent_attaches_to_opening(self):
        alice, bob = uuid4(), uuid4()
        opening = node(alice)
        orphan = Node(id=uuid4(), author_id=bob, parent_id=uuid4(), created_at=T0 + timedelta(minutes=1))
        forest = ReplyForest([opening, orphan])
        assert forest.ancestors(orphan.id) == [opening.id]

    def test_extra_roots_attach_to_earliest(self):
        alice, bob = uuid4(), uuid4()
        first = node(alice, minute=0)
        second = node(bob, minute=5)
        forest = ReplyForest([second, first])
        assert forest.original is first
        assert forest.ancestors(second.id) == [first.id]

    def test_ancestors_and_depth(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        root = node(a)
        reply = node(b, root, 1)
        nested = node(c, reply, 2)
        forest = ReplyForest([root, reply, nested])
        assert forest.ancestors(nested.id) == [reply.id, root.id]
        assert forest.depth(nested.id) == 2
        assert forest.is_ancestor(root.id, nested.id)
        assert not forest.is_ancestor(nested.id, root.id)

    def test_self_parent_is_ignored(self):
        a = uuid4()
        doc_id = uuid4()
        loop = Node(id=doc_id, author_id=a, parent_id=doc_id, created_at=T0)
        forest = ReplyForest([loop])
        assert forest.ancestors(doc_id) == []


class TestIdentifyUserPairs:
    def test_pairs_only_reply_edges(self):
        alice, bob, carol = uuid4(), uuid4(), uuid4()
        root = node(alice)
        bob_reply = node(bob, root, 1)
        carol_reply = node(carol, bob_reply, 2)

        pairs = identify_user_pairs([root, bob_reply, carol_reply])
        keys = {p.key for p in pairs}
        assert keys == {canonical_pair(alice, bob), canonical_pair(bob, carol)}
        # alice and carol posted in the same thread but never replied to each other
        assert canonical_pair(alice, carol) not in keys

    def test_same_author_reply_is_skipped(self):
        alice = uuid4()
        root = node(alice)
        follow_up = node(alice, root, 1)
        assert identify_user_pairs([root, follow_up]) == []

    def test_canonical_order_and_paths(self):
        alice, bob = uuid4(), uuid4()
        root = node(alice)
        reply = node(bob, root, 1)
        counter = node(alice, reply, 2)

        (pair,) = identify_user_pairs([root, reply, counter])
        assert pair.user_id1 < pair.user_id2
        assert pair.document_ids == [root.id, reply.id, counter.id]
        assert [p["path"] for p in pair.discussion_paths] == [
            [str(root.id), str(reply.id)],
            [str(reply.id), str(counter.id)],
        ]
        assert [p["depth"] for p in pair.discussion_paths] == [1, 2]

        first_direction = "user1_to_user2" if bob == pair.user_id1 else "user2_to_user1"
        assert pair.discussion_paths[0]["direction"] == first_direction
        assert pair.discussion_paths[0]["direction"] != pair.discussion_paths[1]["direction"]

    def test_late_root_pairs_with_opening_author(self):
        alice, bob = uuid4(), uuid4()
        opening = node(alice, minute=0)
        unattached = node(bob, minute=3)
        (pair,) = identify_user_pairs([opening, unattached])
        assert pair.key == canonical_pair(alice, bob)

    def test_empty_topic(self):
        assert identify_user_pairs([]) == []


class TestPairDocuments:
    def test_creation_order(self):
        alice, bob, carol = uuid4(), uuid4(), uuid4()
        root = node(alice)
        reply = node(bob, root, 1)
        other = node(carol, root, 2)
        counter = node(alice, reply, 3)

        docs = pair_documents([counter, other, reply, root], bob, alice)
        assert [d.id for d in docs] == [root.id, reply.id, counter.id]

    def test_unrelated_users(self):
        alice, bob = uuid4(), uuid4()
        assert pair_documents([node(alice)], alice, bob) == []
