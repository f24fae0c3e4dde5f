"""
Gemini calls: request analysis, structured brief parsing and image editing.
"""
import asyncio
import base64
import io
import logging
import time
from typing import Optional

import httpx
from fastapi import HTTPException
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from fixtral.core.config import Settings, settings
from fixtral.schemas import EditForm, EditOutcome

logger = logging.getLogger(__name__)

# Some image hosts refuse requests without a browser user agent.
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"

ANALYSIS_PROMPT = """Analyze this Reddit Photoshop request and provide a concise, specific edit instruction for AI image editing.

Post Title: "{title}"
Post Description: "{description}"

Look at the image and return ONLY a clear, direct instruction describing exactly what should be changed.
Focus on specific visual modifications such as removing objects, changing colors, adjusting lighting or adding elements.
Keep it concise (1-2 sentences max) and actionable.

Edit instruction:"""

PARSE_PROMPT = """Convert this Photoshop request into a structured edit brief.

Title: "{title}"
Body: "{body}"

Respond with JSON only, using these keys:
task_type ("object_removal", "color_change", "background_change", "enhancement", "restoration" or "other"),
instructions (string), objects_to_remove (list of strings), objects_to_add (list of strings),
style ("realistic", "artistic", "cartoon" or "vintage"), mask_needed (boolean), nsfw_flag (boolean),
additional_instructions (string, optional)."""

PARSE_FAILED_INSTRUCTIONS = "Error parsing request"
TIMEOUT_MESSAGE = "Gemini API request timed out. Please try again."
SAFETY_MESSAGE = "Content blocked by safety filters. Please try a different prompt."


def default_edit_form() -> EditForm:
    return EditForm(instructions=PARSE_FAILED_INSTRUCTIONS)


def detect_mime_type(data: bytes, url: str = "", header: Optional[str] = None) -> str:
    """Sniff the image format, falling back to the response header, then the URL."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            fmt = im.format
    except (UnidentifiedImageError, OSError):
        fmt = None
    mime = Image.MIME.get(fmt) if fmt else None
    if mime:
        return mime
    if header and header.startswith("image/"):
        return header.split(";")[0].strip()
    return "image/png" if ".png" in url.lower() else "image/jpeg"


def to_data_url(data, mime_type: str) -> str:
    encoded = data if isinstance(data, str) else base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def extract_images(response) -> list[str]:
    images = []
    for candidate in response.candidates or []:
        content = candidate.content
        for part in (content.parts if content else None) or []:
            blob = part.inline_data
            if blob is not None and blob.data:
                images.append(to_data_url(blob.data, blob.mime_type or "image/png"))
    return images


def was_blocked(response) -> bool:
    candidates = response.candidates or []
    if candidates and candidates[0].finish_reason == types.FinishReason.SAFETY:
        return True
    feedback = response.prompt_feedback
    return bool(feedback and feedback.block_reason)


class GeminiService:
    def __init__(
        self,
        config: Settings = settings,
        client: Optional[genai.Client] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._client = client
        self._transport = transport

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.config.gemini_api_key:
                raise HTTPException(status_code=500, detail="Gemini API key not configured")
            self._client = genai.Client(api_key=self.config.gemini_api_key)
        return self._client

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        try:
            async with httpx.AsyncClient(
                timeout=self.config.image_download_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                resp = await client.get(url, headers={"User-Agent": BROWSER_USER_AGENT})
        except httpx.TimeoutException:
            raise HTTPException(status_code=504, detail="Timed out downloading the image")
        except httpx.RequestError as e:
            logger.error("image download failed for %s: %s", url, e)
            raise HTTPException(status_code=502, detail="Cannot fetch image")

        if resp.status_code != 200:
            raise HTTPException(status_code=502, detail=f"Failed to fetch image: {resp.status_code}")
        return resp.content, detect_mime_type(resp.content, url, resp.headers.get("content-type"))

    async def analyze_post(self, title: str, description: str, image_url: str) -> str:
        data, mime_type = await self.fetch_image(image_url)
        prompt = ANALYSIS_PROMPT.format(title=title, description=description or title)
        try:
            response = await self.client.aio.models.generate_content(
                model=self.config.gemini_model,
                contents=[prompt, types.Part.from_bytes(data=data, mime_type=mime_type)],
            )
        except genai_errors.APIError as e:
            logger.error("Gemini analysis failed: %s", e)
            raise HTTPException(status_code=502, detail="Gemini API error")

        summary = (response.text or "").strip()
        if not summary:
            raise HTTPException(status_code=502, detail="Gemini returned an empty analysis")
        return summary

    async def parse_request(self, title: str, body: str = "") -> EditForm:
        try:
            response = await self.client.aio.models.generate_content(
                model=self.config.gemini_model,
                contents=PARSE_PROMPT.format(title=title, body=body),
                config=types.GenerateContentConfig(response_mime_type="application/json"),
            )
            return EditForm.model_validate_json(response.text or "")
        except genai_errors.APIError as e:
            logger.error("Gemini parse failed: %s", e)
            raise HTTPException(status_code=502, detail="Gemini API error")
        except ValidationError as e:
            logger.warning("Gemini returned an unreadable edit brief: %s", e)
            raise HTTPException(status_code=502, detail="Gemini returned an unreadable edit brief")

    async def edit_image(self, image_url: str, change_summary: str) -> EditOutcome:
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        data, mime_type = await self.fetch_image(image_url)
        request = self.client.aio.models.generate_content(
            model=self.config.gemini_image_model,
            contents=[change_summary, types.Part.from_bytes(data=data, mime_type=mime_type)],
            config=types.GenerateContentConfig(temperature=0.7, max_output_tokens=2048),
        )
        try:
            response = await asyncio.wait_for(request, timeout=self.config.image_edit_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Gemini edit timed out after %ss", self.config.image_edit_timeout_seconds)
            return EditOutcome(ok=False, method="timeout", error=TIMEOUT_MESSAGE, processing_time=elapsed())
        except genai_errors.APIError as e:
            logger.error("Gemini edit failed: %s", e)
            raise HTTPException(status_code=502, detail="Gemini API error")

        if was_blocked(response):
            return EditOutcome(ok=False, method="safety_blocked", error=SAFETY_MESSAGE, processing_time=elapsed())

        images = extract_images(response)
        if images:
            return EditOutcome(
                ok=True,
                method="google_gemini",
                edited=images[0],
                generated_images=images,
                has_image_data=True,
                processing_time=elapsed(),
            )

        logger.info("Gemini returned no image parts, falling back to the original")
        original = to_data_url(data, mime_type)
        return EditOutcome(
            ok=True,
            method="original_fallback",
            edited=original,
            generated_images=[original],
            has_image_data=True,
            note="Gemini did not return an edited image; the original is returned unchanged.",
            processing_time=elapsed(),
        )
