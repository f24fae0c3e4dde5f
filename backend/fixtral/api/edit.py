import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fixtral.api.deps import get_current_user, get_gemini, get_ledger
from fixtral.core.errors import CreditConflict, QuotaExceeded, TotalPersistenceFailure
from fixtral.schemas import AuthUser
from fixtral.services.credits import CreditLedger
from fixtral.services.gemini import GeminiService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["edit"])


class EditIn(BaseModel):
    image_url: str = Field(alias="imageUrl", min_length=1)
    change_summary: str = Field(alias="changeSummary", min_length=1)


@router.post("/edit")
async def edit(
    payload: EditIn,
    user: AuthUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    gemini: GeminiService = Depends(get_gemini),
):
    status = await ledger.check_limit(user.id, user.email)
    if not status.can_generate:
        raise QuotaExceeded(ledger.quota)

    outcome = await gemini.edit_image(payload.image_url, payload.change_summary)
    if outcome.ok:
        try:
            await ledger.increment(user.id, user.email)
        except (TotalPersistenceFailure, CreditConflict) as e:
            # The edit already ran; return it even when the credit was not recorded.
            logger.error("generation for %s not counted: %s", user.id, e)
        # QuotaExceeded propagates: a concurrent request spent the last credit.
        status = await ledger.check_limit(user.id, user.email)

    body = outcome.model_dump(by_alias=True)
    body["remainingCredits"] = status.remaining_credits
    return body
