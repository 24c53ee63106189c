import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from services.config import Settings
from services.errors import UpstreamError

logger = logging.getLogger(__name__)

# Upstream statuses that mean our credentials or request are wrong; retrying cannot help.
NON_RETRYABLE_STATUSES = {401, 403}


async def _post_chat_completion(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    timeout: float,
) -> httpx.Response:
    """
    Thin wrapper for chat-completion HTTP calls so retry logic is testable (can be monkeypatched).
    """
    return await client.post(url, headers=headers, json=payload, timeout=timeout)


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_block(url: str) -> Dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": url}}


def reply_text(data: Any) -> Optional[str]:
    """
    Pull choices[0].message.content out of a chat-completion envelope.
    Returns None when the envelope does not have that shape. List-style content
    (text parts) is concatenated.
    """
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = (choices[0] or {}).get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [str(p.get("text", "")) for p in content if isinstance(p, dict) and p.get("text")]
        return "\n".join(texts)
    if content is None:
        return ""
    return None


async def chat_completion(
    client: httpx.AsyncClient,
    settings: Settings,
    messages: List[Dict[str, Any]],
    *,
    timeout: float,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
) -> str:
    """
    One call against the chat-completions endpoint. Returns the reply text.

    Raises UpstreamError for anything that is not a structurally valid, non-empty
    reply: missing API key, transport errors, timeouts, non-2xx responses,
    malformed envelopes and empty content. 401/403 and a missing key are marked
    non-retryable.
    """
    if not settings.api_key:
        raise UpstreamError("APICORE_AI_KEY is not configured", retryable=False)

    payload: Dict[str, Any] = {"model": settings.model, "messages": messages}
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    if temperature is not None:
        payload["temperature"] = temperature

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {settings.api_key}",
    }

    try:
        response = await asyncio.wait_for(
            _post_chat_completion(
                client,
                url=settings.api_url,
                headers=headers,
                payload=payload,
                timeout=timeout,
            ),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise UpstreamError(f"request timed out after {timeout:.0f}s") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"request failed: {type(e).__name__}: {e}") from e

    if not response.is_success:
        error_text = response.text
        logger.error(f"Chat completion failed: {response.status_code} - {error_text[:500]}")
        raise UpstreamError(
            f"API call failed: {response.status_code}",
            status=response.status_code,
            body=error_text,
            retryable=response.status_code not in NON_RETRYABLE_STATUSES,
        )

    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise UpstreamError("response was not valid JSON") from e

    text = reply_text(data)
    if text is None:
        raise UpstreamError("unexpected response format", body=json.dumps(data)[:300] if data else None)
    if not text.strip():
        raise UpstreamError("empty reply from model")
    return text
