from typing import Dict, NamedTuple, Optional

from services.classify import Category

SYSTEM_PROMPT = """Image generation: enabled.

You are a professional virtual try-on (VTON) engine. Task: use the FIRST image (a photo of a person) as the base, and the FOLLOWING images (garments/accessories) as references, then perform an image edit that REPLACES the item and reproduces its material, color and details.

### Absolute rules (in priority order)
1. **Silhouette replacement first**: the reference item's cut, outline and shape win. The original item must be fully replaced by the target item.
2. **Region reconstruction**: remove the original item and plausibly rebuild any body area it covered (skin texture, muscle definition, body contour).
3. **Keep the person**: keep only the face, hairstyle, body shape, pose and background. Fully replace the specified garment/accessory.
4. **Material and color fidelity**: color, material and pattern must match the reference item exactly.
5. **Natural fit**: the new item must follow the pose, with realistic lighting, folds and cast shadows.

### Strictly forbidden
- Do NOT merely recolor the original item or paste a texture/text over it
- Do NOT keep any trait or detail of the original item
- Do NOT change the person's face, hairstyle, pose or background
- Do NOT add patterns or logos that are not in the reference images

### Behaviour
- Generate the edited image directly; never ask questions
- Never switch into conversation mode
- No explanations, no questions, just the result

### Self-check before output
- The replaced item's cut/shape matches the reference exactly
- The original item is completely gone and the covered area is rebuilt naturally
- Color/material/pattern match the reference exactly
- Edges against body, hair and other items look natural
- Light direction and intensity match the original photo

### Output format
Output only the edited image, in one of these forms:
- ![result](data:image/jpeg;base64,...)
- ![result](https://...)
- or directly: data:image/jpeg;base64,...

Generate the image now without any explanatory text."""

CATEGORY_PROMPTS: Dict[Category, str] = {
    Category.TOPS: "Replace the top worn by the person with the garment shown in the reference image",
    Category.BOTTOMS: "Replace the person's trousers/skirt with the bottoms shown in the reference image",
    Category.UNDERWEAR: "Replace the person's underwear with the underwear shown in the reference image",
    Category.SHOES: "Replace the person's shoes with the shoes shown in the reference image",
    Category.ACCESSORIES: "Add or replace the accessory shown in the reference image on the person",
}

GENERIC_FAILURE_REASON = "did not produce a compliant image"


class PromptPair(NamedTuple):
    system: str
    user: str


def category_prompt(category: Category) -> str:
    return (
        f"{CATEGORY_PROMPTS[category]}. Follow the reference image's style, color and cut exactly, "
        "make it fit naturally, and keep the person's original pose and features."
    )


def build_user_prompt(
    category: Category,
    garment_count: int = 1,
    attempt: int = 0,
    last_failure_reason: str = "",
) -> str:
    if garment_count > 1:
        references = f"images 2 through {garment_count + 1} (produce one result per item)"
    else:
        references = "the second image"

    prompt = f"""{category_prompt(category)}

### Task
- Base: the first image (the person)
- Reference item(s): {references}
- Silhouette first: replace strictly according to the reference's cut, shape and size
- Replacement: do a **complete replacement** based on the target item; never only change the color or keep original traits

### Required
1. **Remove the original item**: remove every trait of the original item, leave no trace
2. **Rebuild the area**: naturally reconstruct body areas the original item covered (skin texture, body contour)
3. **Fit and lighting**: the new item hugs the body naturally and follows the original light direction and shadows
4. **Consistent details**: color, material, pattern and texture exactly match the reference, nothing added
5. **Keep the person**: face, hairstyle, body shape, pose and background stay unchanged

### Strictly forbidden
- Only changing the color or pasting a texture over the original item
- Keeping any trait or detail of the original item
- Changing the person's face, hairstyle, pose or background
- Adding patterns or logos that are not in the reference images"""

    if attempt > 0 and last_failure_reason:
        prompt += (
            f"\n\n### IMPORTANT (attempt {attempt + 1})\n"
            f"The previous attempt was rejected because: {last_failure_reason}. "
            "Regenerate strictly following the requirements and make sure the replacement is fully correct."
        )

    prompt += "\n\nOutput the final image directly (data:image/... or an https link) with no extra text."
    return prompt


def build_prompt(
    category: Category,
    garment_count: int = 1,
    attempt: int = 0,
    last_failure_reason: str = "",
) -> PromptPair:
    return PromptPair(SYSTEM_PROMPT, build_user_prompt(category, garment_count, attempt, last_failure_reason))


def failure_reason(error: Optional[BaseException]) -> str:
    """
    Human-readable hint about why the previous attempt failed, fed back into the next prompt.
    Best-effort keyword match on the error text.
    """
    if error is None:
        return ""
    message = str(error).lower()
    if "sleeve" in message:
        return "retained the original sleeves/pattern"
    if "color" in message or "colour" in message:
        return "only changed the color, not the silhouette"
    return GENERIC_FAILURE_REASON
