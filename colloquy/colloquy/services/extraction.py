import logging
import re
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_HEADING = re.compile(r"^#{1,6}[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*\n", re.DOTALL)
_FRONT_MATTER_TITLE = re.compile(r"^title:\s*[\"']?(.+?)[\"']?\s*$", re.MULTILINE)


class ExtractedDocument(BaseModel):
    """Plain text pulled out of an uploaded file."""

    title: str
    text: str


def _decode(path: Path) -> str:
    raw = path.read_bytes()
    for encoding in ("utf-8-sig", "cp1252", "latin-1"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValueError(f"Could not decode {path.name} with any supported encoding")


def extract_plain(path: Path) -> ExtractedDocument:
    return ExtractedDocument(title=path.stem, text=_decode(path))


def extract_markdown(path: Path) -> ExtractedDocument:
    """
    Markdown essays. A leading front matter block is dropped from the text;
    its ``title:`` wins over the first heading, which wins over the file name.
    """
    text = _decode(path)
    title = None

    front_matter = _FRONT_MATTER.match(text)
    if front_matter:
        found = _FRONT_MATTER_TITLE.search(front_matter.group(1))
        title = found.group(1) if found else None
        text = text[front_matter.end():]

    if title is None:
        heading = _HEADING.search(text)
        title = heading.group(1) if heading else path.stem

    return ExtractedDocument(title=title, text=text)


def extract_pdf(path: Path) -> ExtractedDocument:
    from pdfminer.high_level import extract_text

    return ExtractedDocument(title=path.stem, text=extract_text(str(path)))


def extract_docx(path: Path) -> ExtractedDocument:
    from docx import Document

    doc = Document(str(path))
    # Empty paragraphs are layout, not content
    text = "\n\n".join(p.text for p in doc.paragraphs if p.text.strip())
    return ExtractedDocument(title=doc.core_properties.title or path.stem, text=text)


EXTRACTORS: dict[str, Callable[[Path], ExtractedDocument]] = {
    "text/plain": extract_plain,
    "text/markdown": extract_markdown,
    "text/x-markdown": extract_markdown,
    "application/pdf": extract_pdf,
    DOCX_MIME: extract_docx,
}

SUFFIX_MIME = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".pdf": "application/pdf",
    ".docx": DOCX_MIME,
}


def resolve_path(storage_root: str, file_key: str) -> Path:
    """Resolve a file key under the storage root, refusing keys that escape it."""
    root = Path(storage_root).resolve()
    path = (root / file_key).resolve()
    if path != root and root not in path.parents:
        raise ValueError(f"File key escapes storage root: {file_key}")
    return path


def extract_content(path: Path, mime: str | None) -> ExtractedDocument:
    """
    Extract text by MIME type, using the file suffix when the declared
    type is missing or not one we handle.

    Raises:
        ValueError: If neither the MIME type nor the suffix is supported
    """
    extractor = EXTRACTORS.get(mime or "") or EXTRACTORS.get(SUFFIX_MIME.get(path.suffix.lower(), ""))
    if extractor is None:
        raise ValueError(f"Unsupported file type: {mime} for file {path.name}")

    try:
        return extractor(path)
    except Exception as e:
        logger.exception(f"Failed to extract content from {path.name}: {e}")
        raise


def normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
