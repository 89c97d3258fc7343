"""Anthropic completion callback used by the image parser and the generative stage.

Callers receive a plain callable ``(system, prompt, attachment=None) -> str``
so tests can substitute a MagicMock or lambda. The client is built with
retries disabled, and failures surface as the typed upstream errors from
ledgerpipe.errors.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass

import anthropic

from ledgerpipe.errors import (
    UpstreamError,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
    UpstreamTimeout,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

IMAGE_MEDIA_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})


@dataclass
class Attachment:
    """Binary payload sent alongside the prompt (scanned statement)."""
    data: bytes
    media_type: str


def _content_block(attachment: Attachment) -> dict:
    encoded = base64.standard_b64encode(attachment.data).decode("utf-8")
    if attachment.media_type == "application/pdf":
        block_type = "document"
    elif attachment.media_type in IMAGE_MEDIA_TYPES:
        block_type = "image"
    else:
        raise ValueError(f"Unsupported attachment type: {attachment.media_type}")
    return {
        "type": block_type,
        "source": {
            "type": "base64",
            "media_type": attachment.media_type,
            "data": encoded,
        },
    }


def _is_quota_error(err: anthropic.APIStatusError) -> bool:
    if err.status_code == 402:
        return True
    return "credit balance" in str(err).lower()


def make_completion_fn(
    api_key: str,
    model: str = DEFAULT_MODEL,
    vision_model: str | None = None,
    timeout: float = 60.0,
    max_tokens: int = 8000,
    client=None,
):
    """Create a completion callback bound to an Anthropic client.

    Args:
        api_key: Anthropic API key.
        model: Model for text-only prompts.
        vision_model: Model for prompts with an attachment; defaults to model.
        timeout: Seconds before a call is abandoned.
        max_tokens: Response token ceiling.
        client: Pre-built client (tests); built from api_key when omitted.

    Returns:
        Callable (system: str, prompt: str, attachment: Attachment | None) -> str.
    """
    if client is None:
        client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)
    vision_model = vision_model or model

    def completion_fn(
        system: str, prompt: str, attachment: Attachment | None = None,
    ) -> str:
        if attachment is None:
            content: str | list[dict] = prompt
            chosen = model
        else:
            content = [_content_block(attachment), {"type": "text", "text": prompt}]
            chosen = vision_model

        try:
            response = client.messages.create(
                model=chosen,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.RateLimitError as e:
            raise UpstreamRateLimited("Completion service rate limit exceeded") from e
        except anthropic.APITimeoutError as e:
            raise UpstreamTimeout(f"Completion call timed out after {timeout:.0f}s") from e
        except anthropic.APIStatusError as e:
            if _is_quota_error(e):
                raise UpstreamQuotaExhausted("Completion service credits exhausted") from e
            raise UpstreamError(f"Completion service error ({e.status_code})") from e
        except anthropic.APIError as e:
            raise UpstreamError(f"Completion service unavailable: {e}") from e

        texts = [block.text for block in response.content if getattr(block, "type", "text") == "text"]
        return "".join(texts)

    return completion_fn
