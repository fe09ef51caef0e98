"""Data types shared by the provider layer.

Requests are validated at construction time so callers get a fast, explicit
:class:`~llmchat.providers.errors.ValidationError` rather than a failure
half-way through a network call.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from llmchat.providers.errors import ValidationError

_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


class ProviderId(StrEnum):
    """Backend that speaks for a model; selects the wire format."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GATEWAY = "gateway"


@dataclass(frozen=True)
class ModelDescriptor:
    """A model the application can talk to.

    Two descriptors are duplicates when their ``id`` matches.
    """

    id: str
    display_name: str
    provider: ProviderId
    context_window_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "provider": self.provider.value,
            "context_window": self.context_window_tokens,
        }


@dataclass
class ChatMessage:
    """One message of a chat transcript.

    ``content`` grows while an assistant reply is streaming and is not
    rewritten afterwards.
    """

    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    model: str | None = None
    provider: ProviderId | None = None

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise ValidationError(
                f"invalid role '{self.role}'; must be one of {sorted(_VALID_ROLES)}"
            )

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "model": self.model,
            "provider": self.provider.value if self.provider else None,
        }


@dataclass(frozen=True)
class CompletionRequest:
    """Parameters for a single chat completion call.

    Args:
        messages: Conversation history, oldest first.  Must not be empty.
        model: Vendor model id, e.g. ``"claude-3-5-sonnet-20241022"``.
        provider: Backend that serves *model*.
        tags: Routing hints forwarded to the gateway.
        max_tokens: Upper bound on generated tokens.  ``None`` defers to the
            provider default (Anthropic requires one; see settings).
        temperature: Sampling temperature; ``None`` defers to the provider.
        gateway_key: Virtual key to use instead of the configured gateway key.

    Raises:
        ValidationError: If any field fails validation.
    """

    messages: tuple[ChatMessage, ...]
    model: str
    provider: ProviderId
    tags: tuple[str, ...] = ()
    max_tokens: int | None = None
    temperature: float | None = None
    gateway_key: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValidationError("messages must not be empty")

        if not self.model or not self.model.strip():
            raise ValidationError("model must be a non-empty string")

        try:
            provider = ProviderId(self.provider)
        except ValueError as exc:
            raise ValidationError(f"unsupported provider '{self.provider}'") from exc
        object.__setattr__(self, "provider", provider)

        # Lists are accepted for convenience and frozen here.
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "tags", tuple(self.tags))

        for i, msg in enumerate(self.messages):
            if not isinstance(msg, ChatMessage):
                raise ValidationError(f"messages[{i}] must be a ChatMessage")

        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValidationError(
                f"max_tokens must be a positive integer, got {self.max_tokens}"
            )

        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValidationError(f"temperature must be in [0.0, 2.0], got {self.temperature}")

    @classmethod
    def from_dicts(
        cls,
        messages: list[dict[str, str]],
        model: str,
        provider: str,
        **kwargs: Any,
    ) -> "CompletionRequest":
        """Build a request from plain ``{"role", "content"}`` dicts."""
        parsed: list[ChatMessage] = []
        for i, msg in enumerate(messages):
            if "role" not in msg or "content" not in msg:
                raise ValidationError(
                    f"messages[{i}] must contain both 'role' and 'content' keys"
                )
            parsed.append(ChatMessage(role=msg["role"], content=msg["content"]))
        return cls(messages=tuple(parsed), model=model, provider=provider, **kwargs)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamError:
    raw: Any


StreamEvent = TextDelta | Done | StreamError


# ---------------------------------------------------------------------------
# Built-in catalog
# ---------------------------------------------------------------------------

BUILTIN_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor("gpt-4-turbo-preview", "GPT-4 Turbo", ProviderId.OPENAI, 128000),
    ModelDescriptor("gpt-4", "GPT-4", ProviderId.OPENAI, 8192),
    ModelDescriptor("gpt-3.5-turbo", "GPT-3.5 Turbo", ProviderId.OPENAI, 16385),
    ModelDescriptor(
        "claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", ProviderId.ANTHROPIC, 200000
    ),
    ModelDescriptor("claude-3-opus-20240229", "Claude 3 Opus", ProviderId.ANTHROPIC, 200000),
    ModelDescriptor(
        "claude-3-sonnet-20240229", "Claude 3 Sonnet", ProviderId.ANTHROPIC, 200000
    ),
    ModelDescriptor("claude-3-haiku-20240307", "Claude 3 Haiku", ProviderId.ANTHROPIC, 200000),
)


# ---------------------------------------------------------------------------
# Gateway virtual keys
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelCapabilities:
    """Gateway ``/model/info`` entry, reduced to what the UI needs."""

    id: str
    name: str
    provider: str
    mode: str = "chat"
    max_tokens: int | None = None
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    input_cost: float | None = None
    output_cost: float | None = None
    supports_function_calling: bool | None = None
    supports_vision: bool | None = None
    supports_system_messages: bool | None = None


@dataclass(frozen=True)
class Features:
    """What a set of models allows the user to do, aggregated per key."""

    chat: bool = False
    completion: bool = False
    embeddings: bool = False
    image_generation: bool = False
    audio_transcription: bool = False
    audio_generation: bool = False
    moderation: bool = False
    reranking: bool = False
    realtime: bool = False
    ocr: bool = False
    batch: bool = False
    vision: bool = False
    function_calling: bool = False


@dataclass(frozen=True)
class Budget:
    max: float
    spent: float
    remaining: float
    duration: str | None = None


@dataclass(frozen=True)
class RateLimit:
    tpm: int | None = None
    rpm: int | None = None
    max_parallel: int | None = None


@dataclass(frozen=True)
class VirtualKey:
    """A scoped gateway credential plus everything it unlocks."""

    key: str = field(repr=False)
    models: tuple[ModelCapabilities, ...]
    features: Features
    budget: Budget | None = None
    rate_limit: RateLimit | None = None
    tags: tuple[str, ...] = ()
    expires_at: datetime | None = None
    user_id: str | None = None
    team_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data
