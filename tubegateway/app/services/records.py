"""Provider payload schemas and canonical records.

Two layers of pydantic models live here:

- ``Raw*`` models describe the parts of a YouTube Data API response the
  gateway reads. They validate required fields and coerce the provider's
  string-encoded numbers and booleans, ignoring everything else.
- Canonical records (``VideoRecord``, ``ChannelRecord``, ...) are what
  callers receive. They are frozen and reject unknown fields, so downstream
  code can trust their shape.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

import isodate
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# Provider payload schemas

class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class RawThumbnail(_ProviderModel):
    url: str
    width: Optional[int] = None
    height: Optional[int] = None


class RawSnippet(_ProviderModel):
    title: str
    description: Optional[str] = None
    channel_id: Optional[str] = None
    channel_title: Optional[str] = None
    published_at: Optional[datetime] = None
    thumbnails: Dict[str, RawThumbnail] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    category_id: Optional[str] = None
    default_language: Optional[str] = None
    live_broadcast_content: Optional[str] = None
    custom_url: Optional[str] = None
    country: Optional[str] = None
    playlist_id: Optional[str] = None
    position: Optional[int] = None


class RawOwnedSnippet(RawSnippet):
    """Snippet of a resource that must name its owning channel."""
    channel_id: str


class RawStatistics(_ProviderModel):
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None
    subscriber_count: Optional[int] = None
    hidden_subscriber_count: bool = False
    video_count: Optional[int] = None


class RawContentDetails(_ProviderModel):
    duration: Optional[int] = None
    definition: Optional[str] = None
    caption: Optional[bool] = None
    licensed_content: Optional[bool] = None
    item_count: Optional[int] = None
    video_id: Optional[str] = None
    video_published_at: Optional[datetime] = None

    @field_validator("duration", mode="before")
    @classmethod
    def parse_duration(cls, v):
        """ISO 8601 duration (``PT1H2M3S``) to whole seconds."""
        if v is None or isinstance(v, int):
            return v
        if not isinstance(v, str):
            raise ValueError("duration must be an ISO 8601 string")
        try:
            parsed = isodate.parse_duration(v)
        except (isodate.ISO8601Error, ValueError) as e:
            raise ValueError(f"invalid ISO 8601 duration {v!r}") from e
        if isinstance(parsed, isodate.Duration):
            # Year/month components need an anchor; the epoch keeps it deterministic
            parsed = parsed.totimedelta(start=datetime(1970, 1, 1))
        return int(parsed.total_seconds())


class RawStatus(_ProviderModel):
    privacy_status: Optional[str] = None


class RawBrandingChannel(_ProviderModel):
    keywords: Optional[str] = None


class RawBranding(_ProviderModel):
    channel: Optional[RawBrandingChannel] = None


class RawVideo(_ProviderModel):
    id: str
    snippet: RawOwnedSnippet
    statistics: Optional[RawStatistics] = None
    content_details: Optional[RawContentDetails] = None


class RawChannel(_ProviderModel):
    id: str
    snippet: RawSnippet
    statistics: Optional[RawStatistics] = None
    branding_settings: Optional[RawBranding] = None


class RawPlaylist(_ProviderModel):
    id: str
    snippet: RawOwnedSnippet
    content_details: Optional[RawContentDetails] = None
    status: Optional[RawStatus] = None


class RawPlaylistItem(_ProviderModel):
    id: str
    snippet: RawSnippet
    content_details: Optional[RawContentDetails] = None


class RawSearchId(_ProviderModel):
    kind: Optional[str] = None
    video_id: Optional[str] = None
    channel_id: Optional[str] = None
    playlist_id: Optional[str] = None

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.video_id or self.channel_id or self.playlist_id):
            raise ValueError("search result id must carry videoId, channelId or playlistId")
        return self


class RawSearchResult(_ProviderModel):
    id: RawSearchId
    snippet: RawSnippet


# Canonical records

class CanonicalModel(BaseModel):
    # Sequences are tuples, so a memoized record cannot be changed in place
    model_config = ConfigDict(frozen=True, extra="forbid")


class Thumbnail(CanonicalModel):
    key: str
    url: str
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)

    @property
    def area(self) -> int:
        return self.width * self.height


class VideoRecord(CanonicalModel):
    """A normalized video.

    ``like_count`` and ``comment_count`` are None when the provider hides or
    omits them, which is different from a real count of zero.
    """

    kind: Literal["video"] = "video"
    id: str
    title: str
    description: str = ""
    channel_id: str
    channel_title: str = ""
    published_at: Optional[datetime] = None
    tags: tuple[str, ...] = ()
    category_id: Optional[str] = None
    default_language: Optional[str] = None
    live_broadcast_content: str = "none"
    duration_seconds: int = Field(default=0, ge=0)
    definition: Optional[str] = None
    caption: bool = False
    licensed_content: bool = False
    view_count: int = Field(default=0, ge=0)
    like_count: Optional[int] = Field(default=None, ge=0)
    comment_count: Optional[int] = Field(default=None, ge=0)
    thumbnails: tuple[Thumbnail, ...] = ()
    url: str

    @property
    def is_live(self) -> bool:
        return self.live_broadcast_content == "live"


class ChannelRecord(CanonicalModel):
    kind: Literal["channel"] = "channel"
    id: str
    title: str
    description: str = ""
    custom_url: Optional[str] = None
    country: Optional[str] = None
    published_at: Optional[datetime] = None
    subscriber_count: Optional[int] = Field(default=None, ge=0)
    video_count: int = Field(default=0, ge=0)
    view_count: int = Field(default=0, ge=0)
    keywords: tuple[str, ...] = ()
    thumbnails: tuple[Thumbnail, ...] = ()
    url: str


class PlaylistRecord(CanonicalModel):
    kind: Literal["playlist"] = "playlist"
    id: str
    title: str
    description: str = ""
    channel_id: str
    channel_title: str = ""
    published_at: Optional[datetime] = None
    item_count: int = Field(default=0, ge=0)
    privacy_status: str = "public"
    tags: tuple[str, ...] = ()
    thumbnails: tuple[Thumbnail, ...] = ()
    url: str


class PlaylistItemRecord(CanonicalModel):
    kind: Literal["playlist_item"] = "playlist_item"
    id: str
    title: str
    description: str = ""
    playlist_id: Optional[str] = None
    video_id: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)
    channel_id: Optional[str] = None
    channel_title: str = ""
    published_at: Optional[datetime] = None
    thumbnails: tuple[Thumbnail, ...] = ()
    url: str = ""


class SearchResultRecord(CanonicalModel):
    kind: Literal["search_result"] = "search_result"
    id: str
    result_type: Literal["video", "channel", "playlist"]
    title: str
    description: str = ""
    channel_id: Optional[str] = None
    channel_title: str = ""
    published_at: Optional[datetime] = None
    live_broadcast_content: str = "none"
    thumbnails: tuple[Thumbnail, ...] = ()
    url: str


CanonicalRecord = Union[
    VideoRecord, ChannelRecord, PlaylistRecord, PlaylistItemRecord, SearchResultRecord
]
