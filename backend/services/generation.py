"""
Generation transaction: validate, reserve credits, run the try-on loop, reconcile.

Once credits are reserved every exit path ends in exactly one of:
- record completed, credits kept
- credits refunded, record failed, error flagged credits_refunded
- a CRITICAL ledger-integrity log plus an InternalError
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from schemas import GenerateBody
from services import vton
from services.config import Settings
from services.errors import (
    InsufficientCreditsError,
    InternalError,
    LimitExceededError,
    TryOnError,
    UnauthorizedError,
    ValidationError,
)
from services.ledger import STATUS_COMPLETED, STATUS_FAILED, LedgerBackend
from services.tiers import display_name, is_batch, MODE_BATCH, MODE_SINGLE

logger = logging.getLogger(__name__)


def _validation_details(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "code": "VALIDATION_ERROR",
            "field": ".".join(str(p) for p in err.get("loc", ())),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]


def parse_generate_body(payload: Union[GenerateBody, Mapping[str, Any], None]) -> GenerateBody:
    if isinstance(payload, GenerateBody):
        return payload
    try:
        return GenerateBody.model_validate(payload if payload is not None else {})
    except PydanticValidationError as e:
        raise ValidationError("Invalid request: check the person photo and garment images.", details=_validation_details(e))


class GenerationOrchestrator:
    def __init__(
        self,
        settings: Settings,
        ledger: LedgerBackend,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ):
        self.settings = settings
        self.ledger = ledger
        self.client_factory = client_factory

    async def generate(self, account_id: Optional[int], payload) -> Dict[str, Any]:
        if account_id is None:
            raise UnauthorizedError()

        body = parse_generate_body(payload)
        account = await self.ledger.get_account(account_id)

        garment_count = len(body.clothingImages)
        limits = self.settings.limits_for(account.tier)
        if garment_count > limits.max_garments:
            raise LimitExceededError(display_name(account.tier), limits.max_garments, garment_count)

        batch = is_batch(limits, garment_count)
        cost = limits.batch_cost if batch else limits.single_cost
        mode = MODE_BATCH if batch else MODE_SINGLE
        if account.credits < cost:
            raise InsufficientCreditsError(required=cost, current=account.credits)

        # Conditional decrement; a concurrent request may still win and make this raise.
        await self.ledger.adjust_credits(account_id, -cost)
        try:
            record_id = await self.ledger.create_record(account_id, cost, garment_count, mode)
        except Exception as e:
            logger.error(f"Failed to create generation record for account {account_id}: {e}", exc_info=True)
            refunded = await self._refund_or_alarm(account_id, cost, None, e)
            raise InternalError().mark_refunded() if refunded else InternalError()

        logger.info(
            f"Reserved {cost} credit(s) for account {account_id} "
            f"(record={record_id}, mode={mode}, garments={garment_count})"
        )

        try:
            async with self.client_factory(timeout=self.settings.generation_timeout) as client:
                result = await vton.generate_try_on(client, self.settings, body.userImage, body.clothingImages)
        except asyncio.CancelledError as e:
            # Reconcile even if cancelled again while the refund is in flight.
            await asyncio.shield(self._fail(account_id, cost, record_id, e))
            raise
        except Exception as e:
            raise await self._fail(account_id, cost, record_id, e)

        try:
            await self.ledger.set_record_status(record_id, STATUS_COMPLETED)
        except Exception as e:
            logger.critical(
                f"LEDGER INTEGRITY: generation {record_id} succeeded but could not be marked completed "
                f"for account {account_id}; manual remediation needed: {e}",
                exc_info=True,
            )

        images = result["images"]
        logger.info(f"Generation {record_id} completed for account {account_id} after {result['attempts']} attempt(s)")
        return {
            "success": True,
            "message": f"Generated {len(images)} image(s).",
            "data": {
                "images": images,
                "creditsUsed": cost,
                "generationType": mode,
                "generatedCount": len(images),
            },
        }

    async def _refund_or_alarm(self, account_id: int, cost: int, record_id: Optional[int], cause: BaseException) -> bool:
        try:
            await self.ledger.adjust_credits(account_id, cost)
            return True
        except Exception as e:
            logger.critical(
                f"LEDGER INTEGRITY: failed to refund {cost} credit(s) to account {account_id} "
                f"(record={record_id}, cause={cause!r}); manual remediation needed: {e}",
                exc_info=True,
            )
            return False

    async def _fail(self, account_id: int, cost: int, record_id: int, error: BaseException) -> TryOnError:
        """Refund and mark the record failed. Returns the error to raise."""
        if isinstance(error, asyncio.CancelledError):
            logger.warning(f"Generation {record_id} cancelled for account {account_id}")
        elif isinstance(error, TryOnError):
            logger.error(f"Generation {record_id} failed for account {account_id}: {error}")
        else:
            logger.error(f"Generation {record_id} crashed for account {account_id}: {error}", exc_info=True)

        refunded = await self._refund_or_alarm(account_id, cost, record_id, error)

        marked = True
        try:
            await self.ledger.set_record_status(record_id, STATUS_FAILED, str(error)[:500] or type(error).__name__)
        except Exception as e:
            marked = False
            logger.critical(
                f"LEDGER INTEGRITY: could not mark generation {record_id} failed for account {account_id}; "
                f"manual remediation needed: {e}",
                exc_info=True,
            )

        if not refunded:
            return InternalError()
        if not marked or not isinstance(error, TryOnError):
            return InternalError().mark_refunded()
        return error.mark_refunded()
