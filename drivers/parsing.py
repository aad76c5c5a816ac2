"""
Ordered response-shape parsing.

Backends wrap the same result in different envelopes depending on version
(bare value, {"data": ...}, {"transactions": [...]}, ...). Each shape is a
named strategy; `parse_with` tries them in order and returns a tagged result
that records which one matched.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from common.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ParseStrategy:
    """
    A named extractor. `extract` returns None when the shape does not match.
    """
    name: str
    extract: Callable[[Any], Any]


@dataclass(frozen=True)
class ParseResult:
    """
    Tagged parse outcome.

    Attributes:
        ok: True when one strategy matched
        value: Extracted value (None on failure)
        strategy: Name of the matching strategy
        error: Description of the failure
    """
    ok: bool
    value: Any = None
    strategy: str = ""
    error: str = ""


def parse_with(strategies: Sequence[ParseStrategy], payload: Any, what: str = "response") -> ParseResult:
    """
    Apply strategies in order; the first non-None extraction wins.

    Args:
        strategies: Ordered strategies
        payload: Decoded JSON value
        what: Label used in the failure description

    Returns:
        ParseResult tagged with the matching strategy name
    """
    for strategy in strategies:
        try:
            value = strategy.extract(payload)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError):
            value = None
        if value is not None:
            return ParseResult(ok=True, value=value, strategy=strategy.name)
    shape = type(payload).__name__
    if isinstance(payload, dict):
        shape += f" keys={sorted(payload)[:8]}"
    logger.debug(f"No parse strategy matched {what} ({shape})")
    return ParseResult(ok=False, error=f"unrecognised {what} shape: {shape}")


def _list_or_none(value: Any) -> Optional[list]:
    return value if isinstance(value, list) else None


def _bool_or_none(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _data_field(payload: Any) -> Any:
    return payload.get("data") if isinstance(payload, dict) else None


TRANSACTION_LIST = (
    ParseStrategy("bare-list", _list_or_none),
    ParseStrategy("data-wrapper", lambda p: _list_or_none(_data_field(p))),
    ParseStrategy("transactions-wrapper", lambda p: _list_or_none(p.get("transactions"))),
)

BOOLEAN = (
    ParseStrategy("bare-bool", _bool_or_none),
    ParseStrategy("data-wrapper", lambda p: _bool_or_none(_data_field(p))),
)

SCALAR = (
    ParseStrategy("bare-scalar", lambda p: p if isinstance(p, (str, int)) and not isinstance(p, bool) else None),
    ParseStrategy(
        "data-wrapper",
        lambda p: _data_field(p) if isinstance(_data_field(p), (str, int)) else None,
    ),
)

ACCOUNT_ADDRESS = (
    ParseStrategy("bare-string", lambda p: p if isinstance(p, str) else None),
    ParseStrategy("address-field", lambda p: p.get("address")),
    ParseStrategy("data-address", lambda p: (_data_field(p) or {}).get("address")),
)

BLOB_STORE = (
    ParseStrategy("newly-created", lambda p: p["newlyCreated"]["blobObject"]["blobId"]),
    ParseStrategy("already-certified", lambda p: p["alreadyCertified"]["blobId"]),
)

OBJECT_FIELDS = (
    ParseStrategy("content-fields", lambda p: p["content"]["fields"] if isinstance(p["content"]["fields"], dict) else None),
    ParseStrategy("content", lambda p: p["content"] if isinstance(p["content"], dict) else None),
)

ACCOUNT_LIST = (
    ParseStrategy("bare-list", _list_or_none),
    ParseStrategy("context-value", lambda p: _list_or_none(p.get("value"))),
)

CONTEXT_VALUE = (
    ParseStrategy("context-value", lambda p: p["value"] if "context" in p else None),
    ParseStrategy(
        "bare-value",
        lambda p: None if isinstance(p, dict) and "context" in p else p,
    ),
)
