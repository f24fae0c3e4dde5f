from fastapi import APIRouter, Depends

from fixtral.api.deps import get_current_user, get_ledger
from fixtral.schemas import AuthUser, CreditStatus
from fixtral.services.credits import CreditLedger

router = APIRouter(tags=["credits"])


@router.get("/credits", response_model=CreditStatus, response_model_by_alias=True)
async def credits(user: AuthUser = Depends(get_current_user), ledger: CreditLedger = Depends(get_ledger)):
    return await ledger.check_limit(user.id, user.email)
