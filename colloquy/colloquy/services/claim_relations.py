"""Lexical claim-relation heuristic used when no model is available."""

import re

from colloquy.schemas import ClaimRelation

NEGATIONS = frozenset(
    {
        "not", "no", "never", "false", "isn't", "aren't", "wasn't", "weren't",
        "doesn't", "don't", "didn't", "cannot", "can't", "won't", "nothing", "none",
        "neither", "nor", "untrue", "incorrect", "wrong",
    }
)
STOPWORDS = frozenset({"a", "an", "the", "is", "are", "was", "were", "be", "of", "to", "and", "in", "it", "that", "this"})

_TOKEN = re.compile(r"[\w']+", re.UNICODE)

AGREE_OVERLAP = 0.6
CONTRADICT_OVERLAP = 0.5


def tokenize(text: str) -> list[str]:
    return [t.lower() for t in _TOKEN.findall(text)]


def content_tokens(text: str) -> set[str]:
    return {t for t in tokenize(text) if t not in NEGATIONS and t not in STOPWORDS}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def negation_parity(text: str) -> int:
    return sum(1 for t in tokenize(text) if t in NEGATIONS) % 2


def heuristic_relation(claim_a: str, claim_b: str) -> ClaimRelation:
    """
    High overlap with the same negation parity reads as agreement, high
    overlap with opposite parity as contradiction, anything else unrelated.
    Confidence is the overlap itself.
    """
    overlap = jaccard(content_tokens(claim_a), content_tokens(claim_b))
    same_polarity = negation_parity(claim_a) == negation_parity(claim_b)

    if same_polarity and overlap >= AGREE_OVERLAP:
        return ClaimRelation(relation="agree", confidence=round(overlap, 4))
    if not same_polarity and overlap >= CONTRADICT_OVERLAP:
        return ClaimRelation(relation="contradict", confidence=round(overlap, 4))
    return ClaimRelation(relation="unrelated", confidence=round(1 - overlap, 4))
