"""
Document evaluation: discipline rubrics, prompt construction, response
normalization and the quality check that gates claim collection.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from colloquy.config import settings
from colloquy.services.ai import parse_json_object

logger = logging.getLogger(__name__)

DEFAULT_SCORE = 6.0
NO_CITATION_CEILING = 2.0
NO_CITATION_CORRECTED = 1.0


@dataclass(frozen=True)
class Rubric:
    name: str
    weights: dict[str, float]
    critical: tuple[str, ...]

    @property
    def dimensions(self) -> list[str]:
        return list(self.weights)


RUBRICS: dict[str, Rubric] = {
    "default": Rubric(
        "default",
        {"structure": 0.2, "logic": 0.25, "viewpoint": 0.25, "evidence": 0.2, "citation": 0.1},
        ("viewpoint", "logic", "evidence"),
    ),
    "philosophy": Rubric(
        "philosophy",
        {"structure": 0.15, "logic": 0.3, "viewpoint": 0.3, "argument": 0.15, "citation": 0.1},
        ("viewpoint", "logic", "argument"),
    ),
    "literature": Rubric(
        "literature",
        {"structure": 0.2, "expression": 0.3, "viewpoint": 0.25, "material": 0.15, "citation": 0.1},
        ("viewpoint", "expression", "material"),
    ),
    "history": Rubric(
        "history",
        {"structure": 0.15, "logic": 0.2, "viewpoint": 0.25, "sources": 0.3, "citation": 0.1},
        ("viewpoint", "logic", "sources"),
    ),
    "science": Rubric(
        "science",
        {"structure": 0.15, "logic": 0.25, "viewpoint": 0.2, "data": 0.3, "citation": 0.1},
        ("viewpoint", "logic", "data"),
    ),
}

CRITERIA = {
    "structure": "organisation, sectioning and flow from introduction to conclusion",
    "logic": "rigour of reasoning and completeness of the inference chain",
    "viewpoint": "originality, depth and clarity of the positions taken",
    "evidence": "quality, sufficiency and relevance of supporting evidence",
    "citation": "number, quality and consistency of references",
    "argument": "rigour and persuasiveness of the argument",
    "expression": "accuracy and fluency of the writing",
    "material": "quality and richness of the material used",
    "sources": "use and verification of historical sources",
    "data": "accuracy of data and depth of analysis",
}


def get_rubric(discipline: str | None) -> Rubric:
    if not discipline:
        return RUBRICS["default"]
    return RUBRICS.get(discipline.strip().lower(), RUBRICS["default"])


# ============================================================================
# Citation detection
# ============================================================================

_REFERENCE_HEADING = re.compile(r"(?:references?|bibliography|works?\s*cited)[:]?\s*\n([\s\S]{50,})", re.IGNORECASE)
_REPEATED_MARKERS = [
    re.compile(r"\[\d+\]"),
    re.compile(r"\[\d+[-\s,]\d+\]"),
    re.compile(r"\(\d{4}[a-z]?\)"),
    re.compile(r"\([A-Z][a-z]+\s+et\s+al\.\s*,\s*\d{4}\)"),
    re.compile(r"[¹²³⁴-⁹]"),
]
_IDENTIFIERS = [
    re.compile(r"doi[:\s]?10\.\d+/\S+", re.IGNORECASE),
    re.compile(r"isbn[:\s]?\d{10,13}", re.IGNORECASE),
    re.compile(r"https?://\S*(?:doi|pubmed|arxiv)", re.IGNORECASE),
]
_AUTHOR_YEAR = [
    re.compile(r"\([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s*,\s*\d{4}[a-z]?\)"),
    re.compile(r"\[[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s*,\s*\d{4}[a-z]?\]"),
]


def has_citations(text: str) -> bool:
    """
    True when the text shows any sign of referencing: a non-trivial
    reference section, two or more in-text markers of one kind, a DOI/ISBN
    or an author-year citation.
    """
    match = _REFERENCE_HEADING.search(text)
    if match and len(match.group(1).strip()) > 20:
        return True
    if any(len(p.findall(text)) >= 2 for p in _REPEATED_MARKERS):
        return True
    if any(p.search(text) for p in _IDENTIFIERS):
        return True
    return any(p.search(text) for p in _AUTHOR_YEAR)


# ============================================================================
# Prompt and response handling
# ============================================================================


def build_prompt(text: str, rubric: Rubric, overview: str | None, cited: bool) -> str:
    criteria = "\n".join(
        f"{i}. {dim} (0-10): {CRITERIA.get(dim, 'performance on this dimension')}"
        for i, dim in enumerate(rubric.dimensions, 1)
    )
    citation_note = (
        "Citation markers or a reference list were detected in the document."
        if cited
        else "No citation markers, reference list or footnotes were detected. "
        "If the document truly has none, the citation dimension must be scored 0-2."
    )
    summary_part = f"Document overview: {overview}\n\n" if overview else ""
    example = ", ".join(f'"{d}": 7' for d in rubric.dimensions)

    return (
        "You are an experienced academic reviewer. Evaluate the document below.\n\n"
        f"Discipline: {rubric.name}\n\n"
        f"Dimensions:\n{criteria}\n\n"
        f"{summary_part}"
        f"Document content:\n{text}\n\n"
        f"{citation_note}\n\n"
        "Respond with a JSON object: "
        f'{{"scores": {{{example}}}, "verdict": "overall assessment in two or three sentences"}}\n\n'
        "JSON:"
    )


def _clamp(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_SCORE
    return max(0.0, min(10.0, float(value)))


def parse_evaluation(response: str, rubric: Rubric, cited: bool) -> tuple[dict[str, float], str]:
    """
    Turn a model response into (scores, verdict).

    Missing or non-numeric dimensions default to 6; an unparseable response
    scores every dimension 6. Scores are clamped to 0-10 and the citation
    dimension is forced down to 1 when the text has no citations.
    """
    parsed = parse_json_object(response)
    raw_scores = parsed.get("scores") if parsed else None

    if not isinstance(raw_scores, dict):
        logger.warning("Evaluation response unusable, using default scores")
        scores = {dim: DEFAULT_SCORE for dim in rubric.dimensions}
        verdict = "Automatic evaluation unavailable; default scores assigned."
    else:
        scores = {dim: _clamp(raw_scores.get(dim)) for dim in rubric.dimensions}
        verdict = str(parsed.get("verdict") or "Evaluation complete.")

    if not cited and "citation" in scores and scores["citation"] > NO_CITATION_CEILING:
        logger.info(f"No citations detected, correcting citation score {scores['citation']} to 1")
        scores["citation"] = NO_CITATION_CORRECTED

    return scores, verdict


# ============================================================================
# Quality check
# ============================================================================


@dataclass
class QualityReport:
    is_sufficient: bool
    overall_score: float
    critical_score: float
    reasons: list[str] = field(default_factory=list)


def weighted_score(scores: dict[str, float], rubric: Rubric) -> float:
    weighted_sum = 0.0
    total_weight = 0.0
    for dim, value in scores.items():
        weight = rubric.weights.get(dim, 0.0)
        score = value if isinstance(value, (int, float)) else 0.0
        weighted_sum += score * weight
        total_weight += weight
    return weighted_sum / total_weight if total_weight > 0 else 0.0


def check_document_quality(scores: dict[str, float], discipline: str | None = None) -> QualityReport:
    """Decide whether an evaluated document is good enough to contribute claims."""
    rubric = get_rubric(discipline)
    overall = weighted_score(scores, rubric)

    critical_values = [scores.get(d) or 0 for d in rubric.critical]
    critical_values = [v for v in critical_values if v > 0]
    critical = sum(critical_values) / len(critical_values) if critical_values else 0.0

    reasons = []
    if overall < settings.quality_overall_threshold:
        reasons.append(f"overall score {overall:.1f}/10 below threshold")
    if critical < settings.quality_critical_threshold:
        reasons.append(f"critical dimensions ({', '.join(rubric.critical)}) average {critical:.1f}/10 below threshold")
    viewpoint = scores.get("viewpoint") or 0
    if viewpoint < settings.quality_viewpoint_threshold:
        reasons.append(f"viewpoint score {viewpoint:.1f}/10 too low to extract claims")
    if scores and not any(isinstance(v, (int, float)) and v >= 4 for v in scores.values()):
        reasons.append("no dimension reaches 4/10")

    return QualityReport(
        is_sufficient=not reasons,
        overall_score=overall,
        critical_score=critical,
        reasons=reasons,
    )
