import time
import uuid
from datetime import date, datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

ANONYMOUS_USER = "anonymous"
_DATETIME = TypeAdapter(datetime)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_record_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    # The browser client and the legacy local storage format are camelCase.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None


class UserCredits(CamelModel):
    daily_generations: int = Field(default=0, ge=0)
    last_reset_date: date
    total_generations: int = Field(default=0, ge=0)


class CreditStatus(CamelModel):
    can_generate: bool
    remaining_credits: int
    credits: UserCredits
    is_admin: bool


class HistoryRecord(CamelModel):
    id: str = Field(default_factory=new_record_id)
    user_id: Optional[str] = None
    # Anonymous records belong to the browser that created them.
    device_id: Optional[str] = None
    post_id: str
    post_title: str = "Generated Image"
    request_text: str = ""
    analysis: str = ""
    edit_prompt: str = ""
    original_image_url: str = ""
    edited_image_urls: List[str] = Field(default_factory=list)
    post_url: str = ""
    method: str = "google_gemini"
    status: Literal["completed", "failed"] = "completed"
    timestamp: int = Field(default_factory=now_ms)
    processing_time: int = 0

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id

    @property
    def primary_image(self) -> Optional[str]:
        return self.edited_image_urls[0] if self.edited_image_urls else None

    @classmethod
    def from_local(cls, data: dict[str, Any]) -> "HistoryRecord":
        """Build a record from device-local JSON, including the legacy layout.

        Legacy entries carry `editedImageUrl`/`editedContent`/`generatedImages`
        instead of `editedImageUrls`, and `userId: "anonymous"` for ownerless
        records.
        """
        data = dict(data)
        if "editedImageUrls" not in data and "edited_image_urls" not in data:
            urls: list[str] = []
            primary = data.get("editedImageUrl") or data.get("editedContent")
            if primary:
                urls.append(primary)
            for url in data.get("generatedImages") or []:
                if url and url not in urls:
                    urls.append(url)
            data["editedImageUrls"] = urls
        if data.get("userId") == ANONYMOUS_USER:
            data["userId"] = None
        if not data.get("analysis") and isinstance(data.get("editForm"), dict):
            data["analysis"] = data["editForm"].get("instructions") or ""
        return cls.model_validate(data)

    def to_local(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True)
        data["userId"] = self.user_id or ANONYMOUS_USER
        # Older readers only know the single-image field.
        data["editedImageUrl"] = self.primary_image or ""
        return data

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "HistoryRecord":
        created_at = row.get("created_at")
        timestamp = now_ms()
        if isinstance(created_at, str):
            timestamp = int(_DATETIME.validate_python(created_at).timestamp() * 1000)
        urls = list(row.get("generated_images") or [])
        if row.get("edited_image_url") and row["edited_image_url"] not in urls:
            urls.insert(0, row["edited_image_url"])
        return cls(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            post_id=row.get("post_id") or "",
            post_title=row.get("post_title") or "",
            request_text=row.get("request_text") or "",
            analysis=row.get("analysis") or "",
            edit_prompt=row.get("edit_prompt") or "",
            original_image_url=row.get("original_image_url") or "",
            edited_image_urls=urls,
            post_url=row.get("post_url") or "",
            method=row.get("method") or "google_gemini",
            status=row.get("status") or "completed",
            timestamp=timestamp,
            processing_time=row.get("processing_time") or 0,
        )

    def to_row(self) -> dict[str, Any]:
        created_at = datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)
        return {
            "id": self.id,
            "user_id": self.user_id,
            "post_id": self.post_id,
            "post_title": self.post_title,
            "request_text": self.request_text,
            "analysis": self.analysis,
            "edit_prompt": self.edit_prompt,
            "original_image_url": self.original_image_url,
            "edited_image_url": self.primary_image,
            "generated_images": self.edited_image_urls,
            "post_url": self.post_url,
            "method": self.method,
            "status": self.status,
            "processing_time": self.processing_time,
            "created_at": created_at.isoformat(),
        }


class SaveResult(CamelModel):
    success: bool
    method: str
    download_url: Optional[str] = None


class EditForm(BaseModel):
    task_type: str = "other"
    instructions: str = ""
    objects_to_remove: List[str] = Field(default_factory=list)
    objects_to_add: List[str] = Field(default_factory=list)
    style: str = "realistic"
    mask_needed: bool = False
    nsfw_flag: bool = False
    additional_instructions: Optional[str] = None


class EditOutcome(CamelModel):
    ok: bool
    method: str
    edited: Optional[str] = None
    generated_images: List[str] = Field(default_factory=list)
    has_image_data: bool = False
    error: Optional[str] = None
    note: Optional[str] = None
    processing_time: int = 0


class RedditPost(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: str = ""
    image_url: str = Field(alias="imageUrl")
    post_url: str = Field(default="", alias="postUrl")
    created_utc: float = 0
    created_date: str = ""
    author: str = ""
    score: int = 0
    num_comments: int = 0
    subreddit: str = ""
    thumbnail: Optional[str] = None
    upvote_ratio: Optional[float] = None
