"""Transformation pipeline from raw provider payloads to canonical records.

The pipeline is a pure function of its input: identical raw payloads always
produce identical records, so results are memoized in a bounded LRU keyed by
a hash of the payload. Batch entry points report per-item failures instead
of failing the whole batch.
"""

import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ValidationError

from tubegateway.app.exceptions import ErrorKind, GatewayError, TypedError
from tubegateway.app.services.error_classifier import describe_validation_error
from tubegateway.app.services.records import (
    CanonicalRecord,
    ChannelRecord,
    PlaylistItemRecord,
    PlaylistRecord,
    RawChannel,
    RawContentDetails,
    RawPlaylist,
    RawPlaylistItem,
    RawSearchResult,
    RawStatistics,
    RawThumbnail,
    RawVideo,
    SearchResultRecord,
    Thumbnail,
    VideoRecord,
)

logger = logging.getLogger(__name__)

# Operation kind -> record kind produced from its ``items``
OPERATION_RECORD_KINDS: Dict[str, str] = {
    "search": "search_result",
    "videos.list": "video",
    "channels.list": "channel",
    "playlists.list": "playlist",
    "playlistItems.list": "playlist_item",
}

WATCH_URL = "https://www.youtube.com/watch?v={}"
CHANNEL_URL = "https://www.youtube.com/channel/{}"
PLAYLIST_URL = "https://www.youtube.com/playlist?list={}"


@dataclass(frozen=True)
class ItemError:
    """Validation failure of one item in a batch."""
    index: int
    item_id: Optional[str]
    error: TypedError

    def to_dict(self) -> dict:
        return {"index": self.index, "item_id": self.item_id, **self.error.to_dict()}


@dataclass(frozen=True)
class BatchResult:
    records: List[CanonicalRecord] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)


@dataclass(frozen=True)
class TransformedPage:
    """Records of one provider response plus its pagination data."""
    records: List[CanonicalRecord] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)
    next_page_token: Optional[str] = None
    total_results: Optional[int] = None


def fingerprint(raw: Any, kind: str = "") -> str:
    """SHA256 of the payload's canonical JSON, prefixed by the record kind."""
    body = json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(f"{kind}\n{body}".encode("utf-8")).hexdigest()


def canonical_json(record: BaseModel) -> bytes:
    """Byte-stable JSON rendering of a canonical record."""
    return json.dumps(
        record.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _thumbnails(raw: Mapping[str, RawThumbnail]) -> tuple[Thumbnail, ...]:
    """Thumbnail variants ordered by descending resolution, then by name."""
    thumbs = [
        Thumbnail(key=key, url=t.url, width=t.width or 0, height=t.height or 0)
        for key, t in raw.items()
    ]
    return tuple(sorted(thumbs, key=lambda t: (-t.area, t.key)))


def _build_video(raw: Mapping[str, Any]) -> VideoRecord:
    src = RawVideo.model_validate(raw)
    sn = src.snippet
    st = src.statistics or RawStatistics()
    cd = src.content_details or RawContentDetails()
    return VideoRecord(
        id=src.id,
        title=sn.title,
        description=sn.description or "",
        channel_id=sn.channel_id,
        channel_title=sn.channel_title or "",
        published_at=_utc(sn.published_at),
        tags=tuple(sn.tags),
        category_id=sn.category_id,
        default_language=sn.default_language,
        live_broadcast_content=sn.live_broadcast_content or "none",
        duration_seconds=cd.duration or 0,
        definition=cd.definition,
        caption=bool(cd.caption),
        licensed_content=bool(cd.licensed_content),
        view_count=st.view_count or 0,
        like_count=st.like_count,
        comment_count=st.comment_count,
        thumbnails=_thumbnails(sn.thumbnails),
        url=WATCH_URL.format(src.id),
    )


def _build_channel(raw: Mapping[str, Any]) -> ChannelRecord:
    src = RawChannel.model_validate(raw)
    sn = src.snippet
    st = src.statistics or RawStatistics()
    keywords: tuple[str, ...] = ()
    if src.branding_settings and src.branding_settings.channel and src.branding_settings.channel.keywords:
        keywords = tuple(k.strip() for k in src.branding_settings.channel.keywords.split(",") if k.strip())
    return ChannelRecord(
        id=src.id,
        title=sn.title,
        description=sn.description or "",
        custom_url=sn.custom_url,
        country=sn.country,
        published_at=_utc(sn.published_at),
        subscriber_count=None if st.hidden_subscriber_count else st.subscriber_count,
        video_count=st.video_count or 0,
        view_count=st.view_count or 0,
        keywords=keywords,
        thumbnails=_thumbnails(sn.thumbnails),
        url=CHANNEL_URL.format(src.id),
    )


def _build_playlist(raw: Mapping[str, Any]) -> PlaylistRecord:
    src = RawPlaylist.model_validate(raw)
    sn = src.snippet
    cd = src.content_details or RawContentDetails()
    return PlaylistRecord(
        id=src.id,
        title=sn.title,
        description=sn.description or "",
        channel_id=sn.channel_id,
        channel_title=sn.channel_title or "",
        published_at=_utc(sn.published_at),
        item_count=cd.item_count or 0,
        privacy_status=(src.status.privacy_status if src.status else None) or "public",
        tags=tuple(sn.tags),
        thumbnails=_thumbnails(sn.thumbnails),
        url=PLAYLIST_URL.format(src.id),
    )


def _build_playlist_item(raw: Mapping[str, Any]) -> PlaylistItemRecord:
    src = RawPlaylistItem.model_validate(raw)
    sn = src.snippet
    cd = src.content_details or RawContentDetails()
    resource = raw.get("snippet", {}).get("resourceId") or {}
    video_id = cd.video_id or (resource.get("videoId") if isinstance(resource, dict) else None)
    return PlaylistItemRecord(
        id=src.id,
        title=sn.title,
        description=sn.description or "",
        playlist_id=sn.playlist_id,
        video_id=video_id,
        position=sn.position,
        channel_id=sn.channel_id,
        channel_title=sn.channel_title or "",
        published_at=_utc(cd.video_published_at or sn.published_at),
        thumbnails=_thumbnails(sn.thumbnails),
        url=WATCH_URL.format(video_id) if video_id else "",
    )


def _build_search_result(raw: Mapping[str, Any]) -> SearchResultRecord:
    src = RawSearchResult.model_validate(raw)
    sn = src.snippet
    if src.id.video_id:
        result_type, item_id, url = "video", src.id.video_id, WATCH_URL.format(src.id.video_id)
    elif src.id.channel_id:
        result_type, item_id, url = "channel", src.id.channel_id, CHANNEL_URL.format(src.id.channel_id)
    else:
        result_type, item_id, url = "playlist", src.id.playlist_id, PLAYLIST_URL.format(src.id.playlist_id)
    return SearchResultRecord(
        id=item_id,
        result_type=result_type,
        title=sn.title,
        description=sn.description or "",
        channel_id=sn.channel_id,
        channel_title=sn.channel_title or "",
        published_at=_utc(sn.published_at),
        live_broadcast_content=sn.live_broadcast_content or "none",
        thumbnails=_thumbnails(sn.thumbnails),
        url=url,
    )


BUILDERS: Dict[str, Callable[[Mapping[str, Any]], CanonicalRecord]] = {
    "video": _build_video,
    "channel": _build_channel,
    "playlist": _build_playlist,
    "playlist_item": _build_playlist_item,
    "search_result": _build_search_result,
}


def item_identifier(raw: Any) -> Optional[str]:
    """Best-effort identifier of a raw item, for error reports."""
    if not isinstance(raw, Mapping):
        return None
    ident = raw.get("id")
    if isinstance(ident, str):
        return ident
    if isinstance(ident, Mapping):
        for key in ("videoId", "channelId", "playlistId"):
            if isinstance(ident.get(key), str):
                return ident[key]
    return None


class TransformationPipeline:
    """Validates raw payloads and normalizes them into canonical records.

    Usage:
        pipeline = TransformationPipeline(cache_size=1000)
        page = pipeline.transform_response("videos.list", body)
        for record in page.records:
            ...
        for item_error in page.errors:
            ...
    """

    def __init__(self, cache_size: int = 1000):
        """Initialize the pipeline.

        Args:
            cache_size: Entries kept in the memo (0 disables memoization)
        """
        self._cache_size = cache_size
        self._cache: "OrderedDict[str, CanonicalRecord]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def transform(self, raw: Any, kind: str) -> CanonicalRecord:
        """Transform one raw item into a canonical record.

        Args:
            raw: One decoded item from a provider response
            kind: Record kind: video, channel, playlist, playlist_item or search_result

        Returns:
            The canonical record

        Raises:
            GatewayError: VALIDATION_ERROR naming the failing field paths, or
                INVALID_REQUEST for an unknown record kind
        """
        builder = BUILDERS.get(kind)
        if builder is None:
            raise GatewayError.of(ErrorKind.INVALID_REQUEST, detail=f"unknown record kind: {kind}")
        if not isinstance(raw, Mapping):
            raise GatewayError.of(
                ErrorKind.VALIDATION_ERROR,
                detail=f"{kind}: expected an object, got {type(raw).__name__}",
            )

        key = fingerprint(raw, kind) if self._cache_size > 0 else None
        if key is not None and key in self._cache:
            self._cache.move_to_end(key)
            self._hits += 1
            return self._cache[key]

        try:
            record = builder(raw)
        except ValidationError as e:
            raise GatewayError.of(
                ErrorKind.VALIDATION_ERROR,
                detail=f"{kind}: {describe_validation_error(e)}",
            ) from e

        if key is not None:
            self._misses += 1
            self._cache[key] = record
            if len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return record

    def transform_batch(self, items: Sequence[Any], kind: str) -> BatchResult:
        """Transform every item, collecting per-item validation failures."""
        records: List[CanonicalRecord] = []
        errors: List[ItemError] = []
        for index, item in enumerate(items):
            try:
                records.append(self.transform(item, kind))
            except GatewayError as e:
                if e.kind != ErrorKind.VALIDATION_ERROR:
                    raise
                errors.append(ItemError(index=index, item_id=item_identifier(item), error=e.error))
        if errors:
            logger.warning(
                f"{len(errors)} of {len(items)} {kind} items failed validation: "
                f"{', '.join(str(err.item_id or err.index) for err in errors[:5])}"
            )
        return BatchResult(records=records, errors=errors)

    def transform_response(self, operation_kind: str, body: Any) -> TransformedPage:
        """Transform a whole list/search response body.

        Raises:
            GatewayError: INVALID_REQUEST for operations without a record kind,
                VALIDATION_ERROR when the envelope itself is malformed
        """
        kind = OPERATION_RECORD_KINDS.get(operation_kind)
        if kind is None:
            raise GatewayError.of(
                ErrorKind.INVALID_REQUEST,
                detail=f"no canonical record for operation kind: {operation_kind}",
            )
        if not isinstance(body, Mapping):
            raise GatewayError.of(ErrorKind.VALIDATION_ERROR, detail="response body is not an object")
        items = body.get("items", [])
        if not isinstance(items, list):
            raise GatewayError.of(ErrorKind.VALIDATION_ERROR, detail="response items is not a list")

        batch = self.transform_batch(items, kind)
        page_info = body.get("pageInfo")
        total = page_info.get("totalResults") if isinstance(page_info, Mapping) else None
        token = body.get("nextPageToken")
        return TransformedPage(
            records=batch.records,
            errors=batch.errors,
            next_page_token=token if isinstance(token, str) else None,
            total_results=total if isinstance(total, int) and not isinstance(total, bool) else None,
        )

    def cache_info(self) -> dict:
        return {
            "size": len(self._cache),
            "max_size": self._cache_size,
            "hits": self._hits,
            "misses": self._misses,
        }

    def clear_cache(self) -> None:
        self._cache.clear()
