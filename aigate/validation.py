"""Input validation for gateway request bodies.

Turns the decoded JSON body of ``/ai/chat``, ``/ai/vision`` and
``/ai/speech`` into one of three typed request dataclasses.  Unknown
fields are ignored; every failing field is collected and reported back
to the caller in ``ValidationFailed.details``.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Union
from urllib.parse import urlparse

from .errors import ValidationFailed

CHAT = "chat"
VISION = "vision"
SPEECH = "speech"

ENDPOINT_KINDS = (CHAT, VISION, SPEECH)

CHAT_ROLES = ("system", "user", "assistant")

MAX_TOKENS_LIMIT = 16384

IMAGE_URL_SCHEMES = ("http", "https", "data")
AUDIO_URL_SCHEMES = ("http", "https")


# ---------------------------------------------------------------------------
# Validated request models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    """A single message in a chat conversation."""

    role: str
    content: str


@dataclass(frozen=True)
class ChatRequest:
    """Validated body for ``POST /ai/chat``.

    Parameters
    ----------
    messages:
        Non-empty list of chat messages, in conversation order.
    model:
        Optional model override passed through to the backend.
    conversation_id:
        Optional client-side conversation identifier (``conversationId``
        on the wire).
    stream:
        Whether to stream the response as newline-delimited JSON.
    temperature:
        Optional sampling temperature in ``[0.0, 2.0]``.
    max_tokens:
        Optional completion length cap (``maxTokens`` on the wire).
    """

    messages: tuple[ChatMessage, ...]
    model: str | None = None
    conversation_id: str | None = None
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None

    kind = CHAT


@dataclass(frozen=True)
class VisionRequest:
    """Validated body for ``POST /ai/vision``.

    At least one of *image_url* / *image_base64* is set.  *image_url* is
    an ``http``, ``https`` or ``data:`` URL.
    """

    image_url: str | None = None
    image_base64: str | None = None
    prompt: str | None = None
    model: str | None = None
    stream: bool = False
    max_tokens: int | None = None

    kind = VISION


@dataclass(frozen=True)
class SpeechRequest:
    """Validated body for ``POST /ai/speech``.

    At least one of *audio_url* / *audio_base64* is set.
    """

    audio_url: str | None = None
    audio_base64: str | None = None
    language: str | None = None
    model: str | None = None
    stream: bool = False

    kind = SPEECH


GatewayRequest = Union[ChatRequest, VisionRequest, SpeechRequest]


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


class _Errors:
    """Accumulates field-level failures; first reason per field wins."""

    def __init__(self) -> None:
        self.details: dict[str, str] = {}

    def add(self, field: str, reason: str) -> None:
        self.details.setdefault(field, reason)

    def raise_if_any(self, kind: str) -> None:
        if self.details:
            raise ValidationFailed(
                f"Invalid {kind} request: {', '.join(self.details)}",
                details=dict(self.details),
            )


def _require_dict(body: object) -> dict:
    """Assert that the top-level JSON value is a dict.

    A valid JSON *array* (``[]``) would make ``.get()`` raise
    ``AttributeError``. We catch this early and return a clean 400.
    """
    if not isinstance(body, dict):
        raise ValidationFailed(
            "Request body must be a JSON object",
            details={"body": f"must be a JSON object, got {type(body).__name__}"},
        )
    return body


def _optional_str(d: dict, wire_name: str, errors: _Errors) -> str | None:
    value = d.get(wire_name)
    if value is None:
        return None
    if not isinstance(value, str):
        errors.add(wire_name, f"must be a string, got {type(value).__name__}")
        return None
    return value


def _present_media(d: dict, wire_name: str, errors: _Errors) -> str | None:
    """Like :func:`_optional_str` but an empty string counts as absent."""
    value = _optional_str(d, wire_name, errors)
    if value is not None and not value.strip():
        return None
    return value


def _media_url(
    d: dict, wire_name: str, schemes: tuple[str, ...], errors: _Errors,
) -> str | None:
    """A present media URL whose scheme is one of *schemes*.

    ``http``/``https`` URLs need a host; ``data:`` URLs need a payload.
    """
    value = _present_media(d, wire_name, errors)
    if value is None:
        return None
    value = value.strip()
    parsed = urlparse(value)
    scheme = parsed.scheme.lower()
    if scheme not in schemes:
        errors.add(wire_name, f"URL scheme must be one of {', '.join(schemes)}")
        return None
    if scheme == "data":
        if "," not in parsed.path:
            errors.add(wire_name, "must be a well-formed data: URL")
            return None
    elif not parsed.netloc:
        errors.add(wire_name, "must be an absolute URL with a host")
        return None
    return value


def _media_base64(d: dict, wire_name: str, errors: _Errors) -> str | None:
    """A present base64 payload, returned with whitespace removed."""
    value = _present_media(d, wire_name, errors)
    if value is None:
        return None
    compact = "".join(value.split())
    try:
        base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        errors.add(wire_name, "must be valid base64")
        return None
    return compact


def _optional_temperature(d: dict, errors: _Errors) -> float | None:
    value = d.get("temperature")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.add("temperature", f"must be a number, got {type(value).__name__}")
        return None
    fval = float(value)
    if not 0.0 <= fval <= 2.0:
        errors.add("temperature", f"must be between 0.0 and 2.0, got {fval}")
        return None
    return fval


def _optional_max_tokens(d: dict, errors: _Errors) -> int | None:
    value = d.get("maxTokens")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        errors.add("maxTokens", f"must be an integer, got {type(value).__name__}")
        return None
    if value <= 0 or value > MAX_TOKENS_LIMIT:
        errors.add("maxTokens", f"must be between 1 and {MAX_TOKENS_LIMIT}, got {value}")
        return None
    return value


def _validate_stream(d: dict, errors: _Errors) -> bool:
    value = d.get("stream")
    if value is None:
        return False
    if not isinstance(value, bool):
        errors.add("stream", f"must be a boolean, got {type(value).__name__}")
        return False
    return value


def _validate_messages(value: object, errors: _Errors) -> tuple[ChatMessage, ...]:
    """Return a validated non-empty tuple of :class:`ChatMessage` objects.

    Each element must be an object with a ``role`` from
    :data:`CHAT_ROLES` and a non-empty string ``content``.
    """
    if value is None:
        errors.add("messages", "is required")
        return ()
    if not isinstance(value, list):
        errors.add("messages", f"must be a list, got {type(value).__name__}")
        return ()
    if len(value) == 0:
        errors.add("messages", "must contain at least one message")
        return ()

    result: list[ChatMessage] = []
    for i, msg in enumerate(value):
        if not isinstance(msg, dict):
            errors.add(f"messages[{i}]", f"must be an object, got {type(msg).__name__}")
            continue

        role = msg.get("role")
        if role not in CHAT_ROLES:
            errors.add(
                f"messages[{i}].role",
                f"must be one of {', '.join(CHAT_ROLES)}",
            )

        content = msg.get("content")
        if not isinstance(content, str) or not content.strip():
            errors.add(f"messages[{i}].content", "must be a non-empty string")

        if role in CHAT_ROLES and isinstance(content, str) and content.strip():
            result.append(ChatMessage(role=role, content=content))

    return tuple(result)


# ---------------------------------------------------------------------------
# Public parse functions
# ---------------------------------------------------------------------------


def parse_chat_request(body: object) -> ChatRequest:
    """Parse and validate a ``/ai/chat`` request body.

    Raises
    ------
    ValidationFailed
        On any validation failure, with every failing field in ``details``.
    """
    d = _require_dict(body)
    errors = _Errors()

    messages = _validate_messages(d.get("messages"), errors)
    model = _optional_str(d, "model", errors)
    conversation_id = _optional_str(d, "conversationId", errors)
    stream = _validate_stream(d, errors)
    temperature = _optional_temperature(d, errors)
    max_tokens = _optional_max_tokens(d, errors)

    errors.raise_if_any(CHAT)
    return ChatRequest(
        messages=messages,
        model=model,
        conversation_id=conversation_id,
        stream=stream,
        temperature=temperature,
        max_tokens=max_tokens,
    )


def parse_vision_request(body: object) -> VisionRequest:
    """Parse and validate a ``/ai/vision`` request body."""
    d = _require_dict(body)
    errors = _Errors()

    image_url = _media_url(d, "imageUrl", IMAGE_URL_SCHEMES, errors)
    image_base64 = _media_base64(d, "imageBase64", errors)
    if image_url is None and image_base64 is None and not errors.details:
        errors.add("imageUrl", "one of 'imageUrl' or 'imageBase64' is required")
        errors.add("imageBase64", "one of 'imageUrl' or 'imageBase64' is required")
    prompt = _optional_str(d, "prompt", errors)
    model = _optional_str(d, "model", errors)
    stream = _validate_stream(d, errors)
    max_tokens = _optional_max_tokens(d, errors)

    errors.raise_if_any(VISION)
    return VisionRequest(
        image_url=image_url,
        image_base64=image_base64,
        prompt=prompt,
        model=model,
        stream=stream,
        max_tokens=max_tokens,
    )


def parse_speech_request(body: object) -> SpeechRequest:
    """Parse and validate a ``/ai/speech`` request body."""
    d = _require_dict(body)
    errors = _Errors()

    audio_url = _media_url(d, "audioUrl", AUDIO_URL_SCHEMES, errors)
    audio_base64 = _media_base64(d, "audioBase64", errors)
    if audio_url is None and audio_base64 is None and not errors.details:
        errors.add("audioUrl", "one of 'audioUrl' or 'audioBase64' is required")
        errors.add("audioBase64", "one of 'audioUrl' or 'audioBase64' is required")
    language = _optional_str(d, "language", errors)
    model = _optional_str(d, "model", errors)
    stream = _validate_stream(d, errors)

    errors.raise_if_any(SPEECH)
    return SpeechRequest(
        audio_url=audio_url,
        audio_base64=audio_base64,
        language=language,
        model=model,
        stream=stream,
    )


_PARSERS = {
    CHAT: parse_chat_request,
    VISION: parse_vision_request,
    SPEECH: parse_speech_request,
}


def validate(kind: str, body: object) -> GatewayRequest:
    """Single validation entry point, dispatching on endpoint *kind*.

    Raises
    ------
    ValueError
        If *kind* is not one of :data:`ENDPOINT_KINDS`.
    ValidationFailed
        If the body does not satisfy the schema for *kind*.
    """
    try:
        parser = _PARSERS[kind]
    except KeyError:
        raise ValueError(f"Unknown endpoint kind: {kind!r}") from None
    return parser(body)
