from __future__ import annotations

import re
from typing import Iterable, List, Optional

DEFAULT_LIMIT = 6
MAX_QUERY_LENGTH = 20

_PARTIAL_RE = re.compile(r"^\S*")


def suggest(
    query: str,
    roster: Iterable[str],
    limit: int = DEFAULT_LIMIT,
    *,
    max_query_length: int = MAX_QUERY_LENGTH,
) -> List[str]:
    """Return roster names starting with ``query``, case-insensitively.

    Matches keep roster order. Queries longer than ``max_query_length`` yield
    nothing so free text typed after an ``@`` is not matched.
    """

    if len(query) > max_query_length or limit <= 0:
        return []
    needle = query.lower()
    matches: List[str] = []
    for name in roster:
        if name.lower().startswith(needle):
            matches.append(name)
            if len(matches) >= limit:
                break
    return matches


def extract_query(text: str) -> Optional[str]:
    """Return the text after the last ``@``, or ``None`` without one."""

    at_index = text.rfind("@")
    if at_index < 0:
        return None
    return text[at_index + 1 :]


def apply_suggestion(text: str, username: str) -> str:
    """Replace the partial mention after the last ``@`` with ``username``."""

    at_index = text.rfind("@")
    if at_index < 0:
        return text
    before = text[: at_index + 1]
    after = _PARTIAL_RE.sub("", text[at_index + 1 :], count=1)
    return before + username + ("" if after else " ") + after
