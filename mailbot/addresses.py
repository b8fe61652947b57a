"""Address header parsing for header maps (mostly useful in header mode,
where ``to``/``cc``/``bcc`` are still raw strings).
"""

from __future__ import annotations

import email.utils
from collections.abc import Mapping
from typing import Any

import structlog

from .errors import AddressParseError

logger = structlog.get_logger()

ADDRESS_FIELDS = ("to", "cc", "bcc")


def parse_addresses(headers: Mapping[str, Any], *, quiet: bool = False) -> dict[str, Any]:
    """Return a copy of *headers* with address fields parsed.

    Each present ``to``/``cc``/``bcc`` value (a string or a list of
    strings) becomes a list of ``{"name", "address", "raw"}`` records, one
    per address, where ``raw`` is the address text the record was parsed
    from.  A malformed address raises :class:`AddressParseError`, or with
    *quiet* becomes the placeholder ``{"raw": text}`` while the valid
    addresses around it are kept.
    """
    parsed = dict(headers)
    for field in ADDRESS_FIELDS:
        if field in parsed:
            parsed[field] = _parse_address_header(parsed[field], quiet=quiet)
    return parsed


def _parse_address_header(value: Any, *, quiet: bool) -> list[dict[str, str]]:
    if value is None or value == "":
        return []
    entries = [value] if isinstance(value, str) else list(value)

    records: list[dict[str, str]] = []
    for entry in entries:
        for piece in _split_address_list(str(entry)):
            records.extend(_parse_address_value(piece, quiet=quiet))
    return records


def _split_address_list(value: str) -> list[str]:
    """Split *value* on the commas that separate addresses.

    Commas inside quoted names, comments, angle brackets and groups do not
    separate addresses.
    """
    pieces: list[str] = []
    start = 0
    quoted = escaped = in_angle = in_group = False
    comment_depth = 0
    for index, char in enumerate(value):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif quoted:
            quoted = char != '"'
        elif comment_depth:
            if char == "(":
                comment_depth += 1
            elif char == ")":
                comment_depth -= 1
        elif char == '"':
            quoted = True
        elif char == "(":
            comment_depth = 1
        elif char == "<":
            in_angle = True
        elif char == ">":
            in_angle = False
        elif char == ":" and not in_angle:
            in_group = True
        elif char == ";":
            in_group = False
        elif char == "," and not (in_angle or in_group):
            pieces.append(value[start:index])
            start = index + 1
    pieces.append(value[start:])
    return [piece.strip() for piece in pieces if piece.strip()]


def _parse_address_value(value: str, *, quiet: bool) -> list[dict[str, str]]:
    pairs = [(name, address) for name, address in email.utils.getaddresses([value]) if address]
    if not pairs or any("@" not in address for _, address in pairs):
        logger.debug("address_parse_failed", value=value)
        if quiet:
            return [{"raw": value}]
        raise AddressParseError(value)

    records = []
    for name, address in pairs:
        record = {"address": address, "raw": value}
        if name:
            record["name"] = name
        records.append(record)
    return records
