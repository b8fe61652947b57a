"""Best-effort signature extraction from plain-text bodies."""

from __future__ import annotations

from email_reply_parser import EmailReplyParser


def extract_signature(text: str | None) -> str:
    """Return the signature block of *text*, or ``""`` if none is found.

    A signature is a trailing block separated by a blank line and opened
    by a delimiter such as ``--`` or a "Sent from my ..." line.
    """
    if not text:
        return ""
    message = EmailReplyParser.read(text)
    blocks = [fragment.content for fragment in message.fragments if fragment.signature]
    return "\n".join(blocks).strip()
