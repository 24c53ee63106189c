import logging
from enum import Enum
from typing import Dict

import httpx

from services import inference
from services.config import Settings
from services.errors import TryOnError
from services.image_normalize import shrink_for_classification

logger = logging.getLogger(__name__)


class Category(str, Enum):
    TOPS = "tops"
    BOTTOMS = "bottoms"
    UNDERWEAR = "underwear"
    SHOES = "shoes"
    ACCESSORIES = "accessories"


DEFAULT_CATEGORY = Category.TOPS

CLASSIFICATION_PROMPT = """Identify the type of clothing or item shown in this image. Answer with exactly one letter:

A - Tops (T-shirts, shirts, tank tops, jackets, sweaters, coats, etc.)
B - Bottoms (trousers, skirts, shorts, jeans, etc.)
C - Underwear (bras, briefs, bodysuits, etc.)
D - Shoes (sneakers, heels, boots, sandals, etc.)
E - Accessories (hats, bags, watches, glasses, jewelry, etc.)

Answer only: A or B or C or D or E"""

ANSWER_TO_CATEGORY: Dict[str, Category] = {
    "A": Category.TOPS,
    "B": Category.BOTTOMS,
    "C": Category.UNDERWEAR,
    "D": Category.SHOES,
    "E": Category.ACCESSORIES,
}


def extract_answer(content: str) -> str:
    """Exact single-letter reply first, then the first valid letter anywhere in the reply."""
    normalized = (content or "").strip().upper()
    if normalized in ANSWER_TO_CATEGORY:
        return normalized
    for ch in normalized:
        if ch in ANSWER_TO_CATEGORY:
            return ch
    return ""


async def classify_garment(client: httpx.AsyncClient, settings: Settings, garment_image: str) -> Category:
    """
    Best-effort garment classification with a single low-temperature call.
    Never raises: any failure falls back to DEFAULT_CATEGORY so generation is not blocked.
    """
    messages = [
        {
            "role": "user",
            "content": [
                inference.text_block(CLASSIFICATION_PROMPT),
                inference.image_block(shrink_for_classification(garment_image)),
            ],
        }
    ]
    try:
        raw = await inference.chat_completion(
            client,
            settings,
            messages,
            timeout=settings.classification_timeout,
            max_tokens=settings.classification_max_tokens,
            temperature=settings.classification_temperature,
        )
    except TryOnError as e:
        logger.warning(f"Garment classification failed, defaulting to {DEFAULT_CATEGORY.value}: {e}")
        return DEFAULT_CATEGORY
    except Exception as e:
        logger.warning(f"Garment classification error, defaulting to {DEFAULT_CATEGORY.value}: {type(e).__name__}: {e}")
        return DEFAULT_CATEGORY

    answer = extract_answer(raw)
    category = ANSWER_TO_CATEGORY.get(answer)
    if category is None:
        logger.warning(f"Unrecognised classification answer {raw[:50]!r}, defaulting to {DEFAULT_CATEGORY.value}")
        return DEFAULT_CATEGORY

    logger.info(f"Detected garment category: {category.value}")
    return category
