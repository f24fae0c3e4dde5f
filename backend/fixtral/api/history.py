from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from fixtral.api.deps import get_device_id, get_history, get_optional_user
from fixtral.schemas import AuthUser, CamelModel, HistoryRecord, SaveResult
from fixtral.services.history import HistoryCascade

router = APIRouter(prefix="/history", tags=["history"])


class HistoryRecordIn(CamelModel):
    post_id: str = Field(min_length=1)
    post_title: str = "Generated Image"
    request_text: str = ""
    analysis: str = ""
    edit_prompt: str = ""
    original_image_url: str = ""
    edited_image_urls: List[str] = Field(default_factory=list)
    post_url: str = ""
    method: str = "google_gemini"
    status: Literal["completed", "failed"] = "completed"
    processing_time: int = 0


def _owner(user: Optional[AuthUser]) -> Optional[str]:
    return user.id if user else None


@router.get("")
async def list_history(
    user: Optional[AuthUser] = Depends(get_optional_user),
    device_id: str = Depends(get_device_id),
    history: HistoryCascade = Depends(get_history),
):
    records = await history.load_all(_owner(user), device_id)
    return {"items": [r.model_dump(by_alias=True, exclude={"device_id"}) for r in records], "total": len(records)}


@router.post("", response_model=SaveResult, response_model_by_alias=True)
async def save_history(
    payload: HistoryRecordIn,
    user: Optional[AuthUser] = Depends(get_optional_user),
    device_id: str = Depends(get_device_id),
    history: HistoryCascade = Depends(get_history),
):
    # Signed-in records follow the account, not the browser.
    record = HistoryRecord(**payload.model_dump(), user_id=_owner(user), device_id=None if user else device_id)
    return await history.save(record)


@router.delete("/{record_id}")
async def delete_history_record(
    record_id: str,
    user: Optional[AuthUser] = Depends(get_optional_user),
    device_id: str = Depends(get_device_id),
    history: HistoryCascade = Depends(get_history),
):
    await history.delete(record_id, _owner(user), device_id)
    return {"ok": True}


@router.delete("")
async def clear_history(
    user: Optional[AuthUser] = Depends(get_optional_user),
    device_id: str = Depends(get_device_id),
    history: HistoryCascade = Depends(get_history),
):
    await history.clear(_owner(user), device_id)
    return {"ok": True}
