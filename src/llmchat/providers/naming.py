"""Heuristics for describing models the gateway only knows by id.

These are approximations keyed on id substrings.  Unrecognized ids fall back
to a title-cased id and a conservative 4096-token context window.
"""

import re

DEFAULT_CONTEXT_WINDOW = 4096

# Matched against the whole id; "gpt-4-0613" is not "GPT-4".
_EXACT_NAMES: dict[str, str] = {"gpt-4": "GPT-4"}

# Checked in order; more specific patterns come first.
_DISPLAY_NAMES: tuple[tuple[str, str], ...] = (
    ("gpt-4-turbo", "GPT-4 Turbo"),
    ("gpt-4o", "GPT-4o"),
    ("gpt-3.5-turbo", "GPT-3.5 Turbo"),
    ("claude-3-5-sonnet", "Claude 3.5 Sonnet"),
    ("claude-3-opus", "Claude 3 Opus"),
    ("claude-3-sonnet", "Claude 3 Sonnet"),
    ("claude-3-haiku", "Claude 3 Haiku"),
    ("gemini-1.5-pro", "Gemini 1.5 Pro"),
    ("gemini-1.5-flash", "Gemini 1.5 Flash"),
    ("gemini-pro", "Gemini Pro"),
    ("llama-2-70b", "Llama 2 70B"),
    ("llama-2-13b", "Llama 2 13B"),
    ("llama-2-7b", "Llama 2 7B"),
    ("llama-3", "Llama 3"),
    ("mistral-large", "Mistral Large"),
    ("mistral-medium", "Mistral Medium"),
    ("mixtral-8x7b", "Mixtral 8x7B"),
    ("mistral", "Mistral"),
    ("mixtral", "Mixtral"),
    ("dall-e-3", "DALL-E 3"),
    ("dall-e-2", "DALL-E 2"),
    ("whisper-1", "Whisper"),
    ("text-embedding-ada-002", "Text Embedding Ada 002"),
    ("text-embedding-3-small", "Text Embedding 3 Small"),
    ("text-embedding-3-large", "Text Embedding 3 Large"),
)

_VENDOR_PATTERNS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("gpt", "openai"), "openai"),
    (("claude", "anthropic"), "anthropic"),
    (("gemini", "palm"), "google"),
    (("llama",), "meta"),
    (("mistral", "mixtral"), "mistral"),
    (("cohere",), "cohere"),
    (("dall-e", "dalle", "whisper"), "openai"),
    (("stable-diffusion",), "stability"),
)

_PREFIX = re.compile(r"^([^/:]+)[/:]")


def strip_vendor_prefix(model_id: str) -> str:
    """``"openai/gpt-4o"`` -> ``"gpt-4o"``; ids without a prefix are unchanged."""
    return _PREFIX.sub("", model_id, count=1)


def display_name(model_id: str) -> str:
    """Human-readable name for *model_id*."""
    if model_id in _EXACT_NAMES:
        return _EXACT_NAMES[model_id]
    for pattern, name in _DISPLAY_NAMES:
        if pattern in model_id:
            return name
    words = re.split(r"[-_/]", strip_vendor_prefix(model_id))
    return " ".join(word[:1].upper() + word[1:] for word in words)


def estimate_context_window(model_id: str) -> int:
    """Approximate context window in tokens for *model_id*."""
    if "gpt-4-turbo" in model_id or "gpt-4o" in model_id:
        return 128000
    if model_id == "gpt-4":
        return 8192
    if "gpt-3.5-turbo-16k" in model_id:
        return 16385
    if "gpt-3.5-turbo" in model_id:
        return 4096
    if "claude-3" in model_id:
        return 200000
    if "claude-2" in model_id:
        return 100000
    if "gemini-1.5-pro" in model_id:
        return 1000000
    if "gemini-pro" in model_id:
        return 32000
    if "llama" in model_id:
        return 4096
    if "mistral" in model_id or "mixtral" in model_id:
        return 32000
    return DEFAULT_CONTEXT_WINDOW


def infer_vendor(model_id: str) -> str:
    """Upstream vendor of *model_id*, from a ``vendor/`` prefix or the name."""
    match = _PREFIX.match(model_id)
    if match:
        return match.group(1)
    for patterns, vendor in _VENDOR_PATTERNS:
        if any(p in model_id for p in patterns):
            return vendor
    return "unknown"
