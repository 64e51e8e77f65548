"""
Chat request layer.

Accepts canonical or legacy caller payloads, runs one orchestrated turn and
returns the answer in the caller's dialect.
"""

from tooltrellis.chat.adapter import from_canonical, is_legacy_request, to_canonical
from tooltrellis.chat.models import CanonicalRequest, CanonicalResponse
from tooltrellis.chat.service import ChatService

__all__ = [
    "CanonicalRequest",
    "CanonicalResponse",
    "ChatService",
    "from_canonical",
    "is_legacy_request",
    "to_canonical",
]
