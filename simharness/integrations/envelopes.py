"""
Parsing of heterogeneous JSON response envelopes.

Platform services answer either with a wrapped envelope
(``{"success", "data", "message", "code"}``), with a bare ``{"data": ...}``
object, or with the payload itself. Each shape is handled by one typed
strategy; :func:`parse_envelope` tries them in order and returns the first
success. Key lookups are case-insensitive (``userId`` and ``UserId`` match).
"""

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple, Union

from .exceptions import EnvelopeParseError

_MISSING = object()


def get_field(payload: Any, key: str, default: Any = None) -> Any:
    """Case-insensitive key lookup on a JSON object."""
    if not isinstance(payload, Mapping):
        return default
    if key in payload:
        return payload[key]
    lowered = key.lower()
    for candidate, value in payload.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return value
    return default


def _has_field(payload: Any, key: str) -> bool:
    return get_field(payload, key, _MISSING) is not _MISSING


def _missing_keys(payload: Any, required_keys: Sequence[str]) -> Tuple[str, ...]:
    return tuple(key for key in required_keys if not _has_field(payload, key))


@dataclass(frozen=True)
class ParseResult:
    """
    Outcome of parsing one body.

    ``definitive`` marks a result that ends the strategy chain even though it
    failed (the body matched a shape that reports an explicit failure).
    """

    ok: bool
    payload: Any = None
    strategy: Optional[str] = None
    error: Optional[str] = None
    definitive: bool = False

    @classmethod
    def success(cls, payload: Any, strategy: str) -> "ParseResult":
        return cls(ok=True, payload=payload, strategy=strategy)

    @classmethod
    def rejected(cls, strategy: str, error: str, definitive: bool = False) -> "ParseResult":
        return cls(ok=False, strategy=strategy, error=error, definitive=definitive)


class WrappedEnvelopeStrategy:
    """``{"success": bool, "data": ..., "message": str, "code": int}``"""

    name = "wrapped"

    def parse(self, body: Any, required_keys: Sequence[str]) -> ParseResult:
        if not isinstance(body, Mapping) or not _has_field(body, "success"):
            return ParseResult.rejected(self.name, "no 'success' field")

        if not get_field(body, "success"):
            message = get_field(body, "message") or "request reported failure"
            code = get_field(body, "code")
            detail = f"{message} (code={code})" if code is not None else str(message)
            return ParseResult.rejected(self.name, detail, definitive=True)

        data = get_field(body, "data")
        missing = _missing_keys(data, required_keys)
        if missing:
            return ParseResult.rejected(self.name, f"data missing keys {list(missing)}")
        return ParseResult.success(data, self.name)


class DataEnvelopeStrategy:
    """``{"data": {...}}`` without a success flag."""

    name = "data"

    def parse(self, body: Any, required_keys: Sequence[str]) -> ParseResult:
        if not isinstance(body, Mapping) or not _has_field(body, "data"):
            return ParseResult.rejected(self.name, "no 'data' field")

        data = get_field(body, "data")
        missing = _missing_keys(data, required_keys)
        if missing:
            return ParseResult.rejected(self.name, f"data missing keys {list(missing)}")
        return ParseResult.success(data, self.name)


class BareObjectStrategy:
    """The body is the payload."""

    name = "bare"

    def parse(self, body: Any, required_keys: Sequence[str]) -> ParseResult:
        if body is None:
            return ParseResult.rejected(self.name, "empty body")
        if required_keys:
            missing = _missing_keys(body, required_keys)
            if missing:
                return ParseResult.rejected(self.name, f"object missing keys {list(missing)}")
        return ParseResult.success(body, self.name)


DEFAULT_STRATEGIES = (WrappedEnvelopeStrategy(), DataEnvelopeStrategy(), BareObjectStrategy())


def parse_envelope(
    body: Union[str, bytes, Any],
    required_keys: Iterable[str] = (),
    strategies: Sequence[Any] = DEFAULT_STRATEGIES,
) -> ParseResult:
    """
    Try each strategy in order and return the first successful result.

    When none succeeds the returned result lists every strategy's rejection.
    """
    required = tuple(required_keys)
    if isinstance(body, (str, bytes, bytearray)):
        try:
            body = json.loads(body) if body else None
        except ValueError as e:
            return ParseResult.rejected("json", f"invalid JSON: {e}", definitive=True)

    rejections = []
    for strategy in strategies:
        result = strategy.parse(body, required)
        if result.ok or result.definitive:
            return result
        rejections.append(f"{result.strategy}: {result.error}")

    return ParseResult.rejected("none", "; ".join(rejections))


def unwrap(body: Any, required_keys: Iterable[str] = (), service_name: str = "unknown") -> Any:
    """
    Parse a body and return its payload.

    Raises:
        EnvelopeParseError: When no strategy accepts the body
    """
    result = parse_envelope(body, required_keys)
    if not result.ok:
        raise EnvelopeParseError(
            f"Unrecognised response envelope: {result.error}",
            service_name=service_name,
            error_context={'strategy': result.strategy},
        )
    return result.payload
