"""Reply references carried inline at the start of message content.

A reply is written as ``> reply:<target id>`` on its own first line, followed
by the visible body untouched::

    > reply:4f1c...
    sounds good to me
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

REPLY_PREFIX = "> reply:"
_REPLY_RE = re.compile(r"\A> reply:([^\n]+)\n")


@dataclass(frozen=True)
class ReplyRef:
    reply_to: Optional[str]
    body: str


def encode(target_id: str, body: str) -> str:
    """Prefix ``body`` with a reply marker pointing at ``target_id``."""

    if not target_id:
        raise ValueError("reply target id must be non-empty")
    if "\n" in target_id or "\r" in target_id:
        raise ValueError("reply target id must not contain line breaks")
    return f"{REPLY_PREFIX}{target_id}\n{body}"


def decode(content: str) -> ReplyRef:
    """Split ``content`` into its reply target and visible body.

    Content without a leading marker is returned verbatim with no target.
    """

    match = _REPLY_RE.match(content)
    if match is None:
        return ReplyRef(reply_to=None, body=content)
    return ReplyRef(reply_to=match.group(1), body=content[match.end() :])
