import logging
from typing import Any

from colloquy.services.ai import parse_json_object

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "Untitled document"
OVERVIEW_FALLBACK_CHARS = 300
TITLE_MAX_CHARS = 50


def build_prompt(text: str) -> str:
    return (
        "Summarize the following document.\n\n"
        "1. title: the document's own title if it has one, otherwise a short title "
        f"(at most {TITLE_MAX_CHARS} characters)\n"
        "2. overview: 200-300 words covering the core content and main positions\n"
        "3. claims: the document's core assertions, each a single self-contained sentence\n"
        "4. keywords: 5-10 keywords\n\n"
        f"Document content:\n{text}\n\n"
        'Respond with a JSON object: {"title": "...", "overview": "...", '
        '"claims": ["..."], "keywords": ["..."]}\n\n'
        "JSON:"
    )


def fallback_summary(text: str) -> dict[str, Any]:
    """Summary built from the text itself when the model gives nothing usable."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    title = lines[0][:TITLE_MAX_CHARS] if lines else FALLBACK_TITLE
    overview = text[:OVERVIEW_FALLBACK_CHARS] + ("..." if len(text) > OVERVIEW_FALLBACK_CHARS else "")
    return {"title": title, "overview": overview, "claims": [], "keywords": []}


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def parse_summary(response: str, text: str) -> dict[str, Any]:
    """Normalize a model response into title/overview/claims/keywords."""
    parsed = parse_json_object(response)
    if parsed is None:
        logger.warning("Summary response had no JSON object, using fallback summary")
        return fallback_summary(text)

    fallback = fallback_summary(text)
    return {
        "title": str(parsed.get("title") or fallback["title"]).strip(),
        "overview": str(parsed.get("overview") or fallback["overview"]).strip(),
        "claims": _string_list(parsed.get("claims")),
        "keywords": _string_list(parsed.get("keywords")),
    }
