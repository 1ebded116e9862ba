"""
Trace content checks.

validate_draft() enforces structural limits on every save. validate_for_publish()
is the readiness gate run before a trace may leave DRAFT; it reports every
violated rule rather than stopping at the first.
"""

import ipaddress
import re
import socket
from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

from colloquy.config import settings
from colloquy.errors import ValidationError

TITLE_MAX = 200
AUTHOR_MAX = 200
PUBLISHER_MAX = 200
PAGE_MAX = 50
YEAR_RANGE = (1000, 2200)

LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"})

# A host whose last label is a number is an IPv4 address in any of the
# shortened, octal or hex spellings that browsers accept
_NUMERIC_LABEL = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$")


def _field(citation: Any, name: str) -> Any:
    if isinstance(citation, dict):
        return citation.get(name)
    return getattr(citation, name, None)


def check_url(url: str) -> str | None:
    """Return why a citation URL is unacceptable, or None if it is fine."""
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError:
        return "malformed URL"

    if parts.scheme not in ("http", "https"):
        return "only http and https URLs are allowed"
    if not hostname:
        return "URL has no host"

    hostname = hostname.rstrip(".").lower()
    if hostname in LOCAL_HOSTNAMES or hostname.endswith(".localhost"):
        return "localhost URLs are not allowed"

    if _NUMERIC_LABEL.match(hostname.rsplit(".", 1)[-1]):
        try:
            address = ipaddress.IPv4Address(socket.inet_aton(hostname))
        except (OSError, ValueError):
            return "malformed IPv4 host"
    else:
        try:
            address = ipaddress.ip_address(hostname)
        except ValueError:
            return None

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    if (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
    ):
        return "private or loopback addresses are not allowed"
    return None


def citation_violations(citations: list[Any]) -> list[str]:
    """Structural limits on individual citations."""
    violations = []
    for idx, citation in enumerate(citations, 1):
        title = _field(citation, "title") or ""
        if len(title) > settings.citation_title_max:
            violations.append(f"citation {idx} title exceeds {settings.citation_title_max} characters")
        quote = _field(citation, "quote") or ""
        if len(quote) > settings.citation_quote_max:
            violations.append(f"citation {idx} quote exceeds {settings.citation_quote_max} characters")
        if len(_field(citation, "author") or "") > AUTHOR_MAX:
            violations.append(f"citation {idx} author exceeds {AUTHOR_MAX} characters")
        if len(_field(citation, "publisher") or "") > PUBLISHER_MAX:
            violations.append(f"citation {idx} publisher exceeds {PUBLISHER_MAX} characters")
        if len(_field(citation, "page") or "") > PAGE_MAX:
            violations.append(f"citation {idx} page exceeds {PAGE_MAX} characters")
        year = _field(citation, "year")
        if year is not None and not YEAR_RANGE[0] <= year <= YEAR_RANGE[1]:
            violations.append(f"citation {idx} year must be between {YEAR_RANGE[0]} and {YEAR_RANGE[1]}")
    return violations


def validate_draft(title: str, body: str, citations: Iterable[Any]) -> None:
    """Limits that hold for every save, including drafts."""
    citations = list(citations)
    violations = []

    if not title or not title.strip():
        violations.append("title is required")
    elif len(title) > TITLE_MAX:
        violations.append(f"title exceeds {TITLE_MAX} characters")
    if len(body) > settings.trace_body_max_length:
        violations.append(f"body exceeds {settings.trace_body_max_length} characters")
    if len(citations) > settings.trace_citations_max:
        violations.append(f"at most {settings.trace_citations_max} citations are allowed")
    violations.extend(citation_violations(citations))

    if violations:
        raise ValidationError(violations)


def publish_violations(body: str, citations: Iterable[Any]) -> list[str]:
    citations = list(citations)
    violations = []

    if not body or len(body.strip()) < settings.trace_body_min_length:
        violations.append(f"body must be at least {settings.trace_body_min_length} characters")
    if len(body or "") > settings.trace_body_max_length:
        violations.append(f"body exceeds {settings.trace_body_max_length} characters")

    if not citations:
        violations.append("at least one citation is required")
    elif len(citations) > settings.trace_citations_max:
        violations.append(f"at most {settings.trace_citations_max} citations are allowed")

    for idx, citation in enumerate(citations, 1):
        title = _field(citation, "title")
        url = _field(citation, "url")
        if not title or not title.strip():
            violations.append(f"citation {idx} is missing a title")
        if not url and not _field(citation, "publisher"):
            violations.append(f"citation {idx} needs a URL or a publisher")
        if url:
            problem = check_url(url)
            if problem:
                violations.append(f"citation {idx} URL invalid: {problem}")

    violations.extend(citation_violations(citations))
    return violations


def validate_for_publish(body: str, citations: Iterable[Any]) -> None:
    """Raise ValidationError listing every readiness rule the content breaks."""
    violations = publish_violations(body, citations)
    if violations:
        raise ValidationError(violations)
