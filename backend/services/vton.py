import logging
from typing import Any, Dict, List, Optional

import httpx

from services import classify, inference, prompts
from services.config import Settings
from services.errors import ExtractionFailure, TryOnError, UpstreamError
from services.extract import extract_image_refs
from services.image_normalize import prepare_for_model

logger = logging.getLogger(__name__)

# This module talks to an OpenAI-compatible chat-completions endpoint over plain REST (httpx).
# No SDK is required; the API key comes from Settings.


def build_messages(prompt: prompts.PromptPair, subject_image: str, garment_images: List[str]) -> List[Dict[str, Any]]:
    """System prompt, then one user message: task text, the person photo, then every garment in order."""
    content = [inference.text_block(prompt.user), inference.image_block(subject_image)]
    for garment in garment_images:
        content.append(inference.image_block(garment))
    return [
        {"role": "system", "content": prompt.system},
        {"role": "user", "content": content},
    ]


async def generate_try_on(
    client: httpx.AsyncClient,
    settings: Settings,
    subject_image: str,
    garment_images: List[str],
) -> Dict[str, Any]:
    """
    Runs the classify -> prompt -> generate -> extract cycle with bounded retries.

    The garment category is detected once and reused across attempts. Every failed
    attempt feeds a human-readable reason into the next prompt.

    Returns:
        dict: {"images": [...], "category": str, "attempts": int, "retry_info": [...]}

    Raises:
        UpstreamError / ExtractionFailure from the last attempt once attempts are
        exhausted, or immediately for non-retryable upstream errors.
    """
    if not garment_images:
        raise ValueError("At least one garment image is required")

    max_attempts = max(1, int(settings.max_attempts))
    garment_count = len(garment_images)

    category = await classify.classify_garment(client, settings, garment_images[0])

    subject = prepare_for_model(subject_image, max_bytes=settings.max_image_bytes)
    garments = [prepare_for_model(g, max_bytes=settings.max_image_bytes) for g in garment_images]

    retry_info: List[Dict[str, Any]] = []
    last_error: Optional[TryOnError] = None

    for attempt in range(max_attempts):
        reason = prompts.failure_reason(last_error)
        prompt = prompts.build_prompt(category, garment_count, attempt, reason)
        messages = build_messages(prompt, subject, garments)

        logger.info(
            f"Attempt {attempt + 1}/{max_attempts} - calling {settings.model} "
            f"(category={category.value}, garments={garment_count})"
        )
        try:
            text = await inference.chat_completion(
                client,
                settings,
                messages,
                timeout=settings.generation_timeout,
                max_tokens=settings.generation_max_tokens,
            )
            images = extract_image_refs(text)
            if not images:
                logger.warning(f"No image found in model reply (attempt {attempt + 1}): {text[:200]!r}")
                raise ExtractionFailure(reply=text[:300])
        except (UpstreamError, ExtractionFailure) as e:
            last_error = e
            retry_info.append({
                "attempt": attempt + 1,
                "kind": e.kind.value,
                "reason": str(e)[:300],
                "retryable": e.retryable,
            })
            logger.error(f"Generation attempt {attempt + 1}/{max_attempts} failed: {e}")
            if not e.retryable:
                raise
            if attempt + 1 < max_attempts:
                logger.info(f"Retrying {attempt + 2}/{max_attempts}")
            continue

        logger.info(f"Generated {len(images)} image(s) on attempt {attempt + 1}")
        return {
            "images": images,
            "category": category.value,
            "attempts": attempt + 1,
            "retry_info": retry_info,
        }

    raise last_error or UpstreamError("generation failed")
