"""
Fingerprint Builder — derives the cache/admission key of a reading request.

Key layout: ``{version}|{method}|{primary}-{relating}|{question}``

Only the fields that change the generated reading take part.  The version
tag comes from the prompt definition, so bumping it retires every entry
cached under the previous prompt/response contract.
"""

from __future__ import annotations

from iching_gateway.models import HexagramRef, ReadingRequest


def _hexagram_id(ref: HexagramRef | None) -> str:
    if ref is None or ref.number is None:
        return ""
    return str(ref.number)


def build_fingerprint(request: ReadingRequest, version: str = "") -> str:
    """Return the exact-match key for ``request``.  Never fails."""
    method = request.method or ""
    pair = f"{_hexagram_id(request.primary)}-{_hexagram_id(request.relating)}"
    question = (request.question or "").strip()
    return f"{version}|{method}|{pair}|{question}"
