"""
Tool error classification.

Maps failures reported by the external tool side onto ToolOutcome:

- RETRYABLE_ERROR: structurally recoverable. The call could plausibly succeed
  if the model retries with corrected arguments (missing or misnamed fields,
  bad formats, exhausted transport retries).
- FATAL_ERROR: retrying cannot help within this turn (permission denied,
  tool disabled, authentication, quota, missing resource).

Argument phrasing is checked first, so "Required parameter 'q' not found"
stays retryable even though it also reads like a missing resource. Text
matching neither set defaults to retryable, which lets the retry protocol
absorb unknown errors instead of aborting the turn.
"""

from __future__ import annotations

import re

from tooltrellis.errors import ToolConnectionError, ToolInvocationError
from tooltrellis.tools.models import ToolOutcome

_ARGUMENT_PATTERN = re.compile(
    r"missing|required|parameter|argument|please provide|correct parameters|"
    r"mcp error -32602|invalid (?:param|arg|input|value|format)|"
    r"unexpected (?:field|property|keyword)|undefined|must be|expected|malformed|format",
    re.IGNORECASE,
)

_FATAL_PATTERN = re.compile(
    r"unauthori[sz]ed|forbidden|permission denied|access denied|not permitted|"
    r"authentication failed|invalid api key|invalid credentials|"
    r"disabled|quota exceeded|rate limit|not found|does not exist|no such",
    re.IGNORECASE,
)


def classify_error_text(text: str | None) -> ToolOutcome:
    """Classify an error message returned by a tool."""
    if not text or is_argument_error(text):
        return ToolOutcome.RETRYABLE_ERROR
    if _FATAL_PATTERN.search(text):
        return ToolOutcome.FATAL_ERROR
    return ToolOutcome.RETRYABLE_ERROR


def is_argument_error(text: str | None) -> bool:
    """True when an error message points at the call's arguments."""
    return bool(text) and bool(_ARGUMENT_PATTERN.search(text))


def classify_exception(exc: BaseException) -> ToolOutcome:
    """
    Classify an exception raised while invoking a tool.

    ToolInvocationError carries its own verdict. Permission and connection
    setup problems are fatal. Argument-shaped Python errors are retryable.
    Anything else is classified by its message.
    """
    if isinstance(exc, ToolInvocationError):
        return ToolOutcome.RETRYABLE_ERROR if exc.retryable else ToolOutcome.FATAL_ERROR
    if isinstance(exc, (PermissionError, ToolConnectionError, NotImplementedError)):
        return ToolOutcome.FATAL_ERROR
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ToolOutcome.RETRYABLE_ERROR
    return classify_error_text(str(exc))
