from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class MediaType(StrEnum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    CAROUSEL = "CAROUSEL"


class ChainValidationError(ValueError):
    pass


class ChainItemValidationError(ChainValidationError):
    pass


def validate_media(media_type: MediaType | str, media_urls: list[str]) -> MediaType:
    """Check the media type agrees with the number of media urls.

    TEXT takes no urls, IMAGE and VIDEO exactly one, CAROUSEL two or more.
    Returns the normalized MediaType.
    """
    try:
        normalized = MediaType(str(media_type).upper())
    except ValueError as exc:
        raise ChainItemValidationError(f"Unsupported media type: {media_type}") from exc

    url_count = len(media_urls)
    if normalized == MediaType.TEXT and url_count != 0:
        raise ChainItemValidationError(f"TEXT posts cannot carry media urls (got {url_count})")
    if normalized in {MediaType.IMAGE, MediaType.VIDEO} and url_count != 1:
        raise ChainItemValidationError(f"{normalized} posts require exactly one media url (got {url_count})")
    if normalized == MediaType.CAROUSEL and url_count < 2:
        raise ChainItemValidationError(f"CAROUSEL posts require at least two media urls (got {url_count})")
    return normalized


@dataclass(frozen=True)
class ChainItem:
    content: str
    media_type: MediaType | str = MediaType.TEXT
    media_urls: list[str] = field(default_factory=list)
    sequence: int = 0

    @property
    def has_media(self) -> bool:
        return bool(self.media_urls)

    def validate(self) -> None:
        if not self.content or not self.content.strip():
            raise ChainItemValidationError(f"Thread {self.sequence + 1} has empty content")
        validate_media(self.media_type, self.media_urls)


def build_chain(raw_items: list[dict]) -> list[ChainItem]:
    return [
        ChainItem(
            content=row.get("content") or "",
            media_type=str(row.get("media_type") or MediaType.TEXT.value).upper(),
            media_urls=list(row.get("media_urls") or []),
            sequence=index,
        )
        for index, row in enumerate(raw_items)
    ]


@dataclass(frozen=True)
class Credentials:
    social_id: str
    access_token: str = field(repr=False)


class ReplyWiring(StrEnum):
    ROOT = "root"
    PREVIOUS = "previous"


@dataclass(frozen=True)
class InteractiveContext:
    """A live user session publishing replies inline."""

    user_id: str
    credentials: Credentials
    reply_wiring: ReplyWiring = ReplyWiring.ROOT


@dataclass(frozen=True)
class AutomatedContext:
    """A scheduled or system trigger; replies go through the persistent queue."""

    user_id: str
    credentials: Credentials
    placeholder_parent_id: str | None = None


CallerContext = InteractiveContext | AutomatedContext


@dataclass(frozen=True)
class ChainResult:
    success: bool
    parent_thread_id: str | None = None
    thread_ids: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "parent_thread_id": self.parent_thread_id,
            "thread_ids": list(self.thread_ids),
        }
