"""Shape an inbound proxy body into a provider request.

Accepted bodies::

    {"messages": [{"role": "user", "content": "..."}, ...]}
    {"prompt": "..."}
    {"contents": "..."}
    {...}                       # provider-specific, forwarded as is

An optional ``"model"`` key overrides the configured default model.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from aiproxy.configs.system import UpstreamConfig

from .errors import InvalidPayload, MissingCredential

PROVIDER_GEMINI = "gemini"
PROVIDER_OPENAI = "openai"

# Unrecognised bodies are serialised into the prompt, truncated.
FALLBACK_PROMPT_MAX_CHARS = 4000

JSON_MIME_TYPE = "application/json"


@dataclass(frozen=True)
class UpstreamRequest:
    """One logical upstream call; the retry loop resends it unchanged."""

    provider: str
    url: str
    model: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


def render_prompt(body: dict[str, Any]) -> str:
    """Flatten a proxy body into a single prompt string."""
    messages = body.get("messages")
    if isinstance(messages, list):
        return "\n\n".join(
            f"{str(m.get('role', '')).upper()}: {_content_text(m.get('content', ''))}"
            for m in messages
            if isinstance(m, dict)
        )
    if isinstance(body.get("contents"), str):
        return body["contents"]
    if isinstance(body.get("prompt"), str):
        return body["prompt"]
    return json.dumps(body, ensure_ascii=False)[:FALLBACK_PROMPT_MAX_CHARS]


def _model_override(body: dict[str, Any], default: str) -> str:
    model = body.get("model")
    if isinstance(model, str) and model.strip():
        return model.strip()
    return default


def _gemini_request(
    body: dict[str, Any], config: UpstreamConfig, api_key: str
) -> UpstreamRequest:
    model = _model_override(body, config.gemini_model)
    if isinstance(body.get("contents"), list):
        # Already a generateContent payload.
        payload = {k: v for k, v in body.items() if k != "model"}
    else:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": render_prompt(body)}]}],
            "generationConfig": {"responseMimeType": JSON_MIME_TYPE},
        }
    return UpstreamRequest(
        provider=PROVIDER_GEMINI,
        url=f"{config.base_url}/models/{model}:generateContent",
        model=model,
        payload=payload,
        headers={"x-goog-api-key": api_key, "Content-Type": JSON_MIME_TYPE},
    )


def _openai_request(
    body: dict[str, Any], config: UpstreamConfig, api_key: str
) -> UpstreamRequest:
    payload = dict(body)
    if "messages" not in payload:
        text = next(
            (
                payload[key]
                for key in ("prompt", "contents")
                if isinstance(payload.get(key), str)
            ),
            None,
        )
        if text is not None:
            payload.pop("prompt", None)
            payload.pop("contents", None)
            payload["messages"] = [{"role": "user", "content": text}]
    payload["model"] = _model_override(body, config.openai_model)
    return UpstreamRequest(
        provider=PROVIDER_OPENAI,
        url=f"{config.base_url}/chat/completions",
        model=payload["model"],
        payload=payload,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": JSON_MIME_TYPE,
        },
    )


def decode_body(raw: bytes | str) -> Any:
    """Parse a raw request body as JSON."""
    try:
        return json.loads(raw)
    except ValueError:
        raise InvalidPayload("Request body must be valid JSON") from None


def build_upstream_request(body: Any, config: UpstreamConfig) -> UpstreamRequest:
    """Build the provider request for *body* (raw bytes or parsed JSON).

    The credential is checked before the body is looked at.

    Raises:
        MissingCredential: when the provider has no API key configured.
        InvalidPayload: when *body* is not a JSON object.
    """
    api_key = config.api_key
    if api_key is None:
        raise MissingCredential(
            f"Missing {config.provider} API key "
            f"({config.provider.upper()}_API_KEY)"
        )
    if isinstance(body, (bytes, str)):
        body = decode_body(body)
    if not isinstance(body, dict):
        raise InvalidPayload("Request body must be a JSON object")

    if config.provider == PROVIDER_OPENAI:
        return _openai_request(body, config, api_key)
    return _gemini_request(body, config, api_key)
