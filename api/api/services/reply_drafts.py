"""AI-drafted review replies via the OpenAI chat-completions API."""

from __future__ import annotations

import logging
import re

import httpx

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt injection sanitization
# ---------------------------------------------------------------------------

_PROMPT_INJECTION_PATTERNS = re.compile(
    r"<\|system\|>|<\|user\|>|<\|assistant\|>|"
    r"Human:|Assistant:|"
    r"\[INST\]|\[/INST\]|"
    r"<<SYS>>|<</SYS>>|"
    r"<\|im_start\|>|<\|im_end\|>|"
    r'"""',
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")  # Keep \n, \t, \r
_MAX_FIELD_SIZE = 4 * 1024


def _sanitize_ai_input(value: str, field_name: str = "input") -> str:
    """Sanitize review-derived text before it is placed in a prompt.

    Strips control characters (preserving newlines and tabs), replaces
    known role/delimiter markers, and truncates oversized input.
    """
    cleaned = _CONTROL_CHARS.sub("", value)
    cleaned = _PROMPT_INJECTION_PATTERNS.sub("[FILTERED]", cleaned)
    if len(cleaned) > _MAX_FIELD_SIZE:
        cleaned = cleaned[:_MAX_FIELD_SIZE] + f"\n[TRUNCATED: {field_name} exceeded {_MAX_FIELD_SIZE} bytes]"
    return cleaned


def build_reply_prompt(
    *,
    review_text: str,
    rating: int | None,
    business_name: str | None,
    tone: str | None,
) -> str:
    business = _sanitize_ai_input(business_name or "our business", "business_name")
    voice = _sanitize_ai_input(tone or "warm and professional", "tone")
    stars = str(rating) if rating else "?"
    text = _sanitize_ai_input(review_text or "", "review_text")
    return (
        "You are a helpful, professional customer support assistant for a local business "
        f'named "{business}".\n'
        f"Write a {voice} public reply to this {stars}-star review.\n"
        "Be concise (2-4 sentences), empathetic, and invite the customer to continue the "
        "conversation privately if needed.\n\n"
        f'Review:\n"""\n{text}\n"""'
    )


class ReplyDraftClient:
    """Thin async wrapper around OpenAI chat completions.

    :meth:`generate_reply` returns ``None`` on any failure so callers can
    degrade gracefully when the model is unavailable.

    Parameters
    ----------
    api_key:
        OpenAI API key.  Empty disables the client.
    model:
        Chat model name.
    base_url:
        API root, e.g. ``https://api.openai.com/v1``.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def generate_reply(
        self,
        *,
        review_text: str,
        rating: int | None = None,
        business_name: str | None = None,
        tone: str | None = None,
    ) -> str | None:
        if not self.configured:
            logger.warning("OpenAI API key not configured; cannot draft reply")
            return None

        prompt = build_reply_prompt(
            review_text=review_text,
            rating=rating,
            business_name=business_name,
            tone=tone,
        )
        payload = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.4,
        }
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "OpenAI returned %d: %s",
                exc.response.status_code,
                exc.response.text[:500],
            )
            return None
        except httpx.RequestError as exc:
            logger.warning("OpenAI request failed: %s", exc)
            return None
        except ValueError:
            logger.warning("OpenAI returned a non-JSON body")
            return None

        try:
            draft = str(data["choices"][0]["message"]["content"]).strip()
        except (KeyError, IndexError, TypeError):
            logger.warning("OpenAI response missing choices[0].message.content")
            return None
        return draft or None
