import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from services.tiers import DEFAULT_TIER_LIMITS, Tier, TierLimits

DEFAULT_API_URL = "https://kg-api.cloud/v1/chat/completions"
DEFAULT_MODEL = "gemini-2.5-flash-image-preview"


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration for the try-on backend.

    Built once at startup (see Settings.from_env) and handed to the orchestrator,
    classifier and ledger explicitly, so the core never reads os.environ itself.
    """
    api_key: str = ""
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    generation_timeout: float = 60.0
    classification_timeout: float = 30.0
    max_attempts: int = 3
    generation_max_tokens: int = 500
    classification_max_tokens: int = 10
    classification_temperature: float = 0.1
    max_image_bytes: int = 8 * 1024 * 1024
    checkin_credits: int = 6
    signup_bonus_credits: int = 6
    ledger_type: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./tryon.db"
    admin_secret: Optional[str] = None
    allowed_origins: List[str] = field(default_factory=list)
    tier_limits: Dict[Tier, TierLimits] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))

    @classmethod
    def from_env(cls) -> "Settings":
        origins_str = os.getenv("ALLOWED_ORIGINS", "")
        origins = [o.strip() for o in origins_str.split(",") if o.strip()]
        if not origins:
            origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

        return cls(
            api_key=os.getenv("APICORE_AI_KEY", ""),
            api_url=os.getenv("APICORE_API_URL", DEFAULT_API_URL),
            model=os.getenv("TRYON_MODEL", DEFAULT_MODEL),
            generation_timeout=float(os.getenv("GENERATION_TIMEOUT_S", "60")),
            classification_timeout=float(os.getenv("CLASSIFICATION_TIMEOUT_S", "30")),
            max_attempts=int(os.getenv("GENERATION_MAX_ATTEMPTS", "3")),
            generation_max_tokens=int(os.getenv("GENERATION_MAX_TOKENS", "500")),
            classification_temperature=float(os.getenv("CLASSIFICATION_TEMPERATURE", "0.1")),
            max_image_bytes=int(os.getenv("MAX_IMAGE_BYTES", 8 * 1024 * 1024)),
            checkin_credits=int(os.getenv("CHECKIN_CREDITS", "6")),
            signup_bonus_credits=int(os.getenv("SIGNUP_BONUS_CREDITS", "6")),
            ledger_type=os.getenv("LEDGER_TYPE", "memory").lower(),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tryon.db"),
            admin_secret=os.getenv("ADMIN_SECRET") or None,
            allowed_origins=origins,
        )

    def limits_for(self, tier: Tier) -> TierLimits:
        return self.tier_limits.get(tier) or DEFAULT_TIER_LIMITS[tier]
