from __future__ import annotations

import re
import unicodedata
from typing import TYPE_CHECKING, Any, Dict, Iterable, List

from ..models import AdapterResult

if TYPE_CHECKING:
    from .state import SessionState


def normalize_heading_text(text: str) -> str:
    """Casefold and strip accents, so "Descripción" and "descripcion" compare equal."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _heading_pattern(heading: str) -> re.Pattern[str]:
    return re.compile(rf"^##[ \t]+{re.escape(normalize_heading_text(heading))}[ \t]*$", re.MULTILINE)


def missing_headings(text: str | None, headings: Iterable[str]) -> List[str]:
    """Required headings absent from ``text`` as level-2 Markdown headings, in order."""
    normalized = normalize_heading_text(text or "")
    return [h for h in headings if not _heading_pattern(h).search(normalized)]


def has_required_headings(text: str | None, headings: Iterable[str]) -> bool:
    if not text:
        return False
    return not missing_headings(text, headings)


def limitations_for(label: str, result: AdapterResult) -> List[str]:
    """One entry per failure, per fallback and per adapter notice."""
    entries = []
    if not result.ok:
        entries.append(f"{label}: {result.error or 'unavailable'}")
    elif result.fallback_used:
        reason = result.get("reason")
        entries.append(f"{label}: fallback used" + (f" ({reason})" if reason else "") + ".")
    entries += [f"{label}: {notice}" for notice in result.notices]
    return entries


def assemble_report(state: SessionState) -> Dict[str, Any]:
    """Final response body of a finished run."""
    profile = state.profile
    response: Dict[str, Any] = {
        "ok": True,
        "coords": state.coords.to_dict() if state.coords else None,
    }
    for tool, key in profile.result_fields:
        response[key] = state.payload(tool)
    for key, child in state.children.items():
        response[key] = child.bundle()
    response["report_markdown"] = state.report_markdown or ""
    response["sources"] = [source.to_dict() for source in profile.sources]
    response["limitations"] = list(state.limitations) or [profile.default_limitation]
    return response
