from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fixtral.api.deps import get_gemini
from fixtral.schemas import EditForm
from fixtral.services.gemini import GeminiService, default_edit_form

router = APIRouter(tags=["gemini"])


class AnalyzeIn(BaseModel):
    title: str = ""
    description: str = ""
    image_url: str = Field(alias="imageUrl", min_length=1)


class ParseIn(BaseModel):
    title: str = Field(min_length=1)
    body: str = ""


@router.post("/analyze")
async def analyze(payload: AnalyzeIn, gemini: GeminiService = Depends(get_gemini)):
    summary = await gemini.analyze_post(payload.title, payload.description, payload.image_url)
    return {"ok": True, "changeSummary": summary, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/gemini/parse", response_model=EditForm)
async def parse(payload: ParseIn, gemini: GeminiService = Depends(get_gemini)):
    try:
        return await gemini.parse_request(payload.title, payload.body)
    except HTTPException:
        # The editor still needs a brief it can render.
        return JSONResponse(status_code=500, content=default_edit_form().model_dump())
