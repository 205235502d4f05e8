"""Tests for payload validation and normalization."""

import copy
from datetime import datetime, timezone

import pytest

from tubegateway.app.exceptions import ErrorKind, GatewayError
from tubegateway.app.services.records import VideoRecord
from tubegateway.app.services.transform import (
    TransformationPipeline,
    canonical_json,
    fingerprint,
    item_identifier,
)


def raw_video(video_id="dQw4w9WgXcQ", **overrides):
    item = {
        "kind": "youtube#video",
        "etag": "abc",
        "id": video_id,
        "snippet": {
            "publishedAt": "2009-10-25T06:57:33Z",
            "channelId": "UCuAXFkgsw1L7xaCfnd5JJOw",
            "title": "Never Gonna Give You Up",
            "description": "The official video",
            "channelTitle": "Rick Astley",
            "tags": ["rick astley", "80s"],
            "categoryId": "10",
            "liveBroadcastContent": "none",
            "thumbnails": {
                "default": {"url": "https://i.ytimg.com/vi/x/default.jpg", "width": 120, "height": 90},
                "high": {"url": "https://i.ytimg.com/vi/x/hqdefault.jpg", "width": 480, "height": 360},
                "medium": {"url": "https://i.ytimg.com/vi/x/mqdefault.jpg", "width": 320, "height": 180},
            },
        },
        "contentDetails": {"duration": "PT3M33S", "definition": "hd", "caption": "true"},
        "statistics": {"viewCount": "1500000000", "likeCount": "17000000", "commentCount": "2300000"},
    }
    item.update(overrides)
    return item


def raw_channel(channel_id="UCuAXFkgsw1L7xaCfnd5JJOw", hidden=False):
    return {
        "id": channel_id,
        "snippet": {
            "title": "Rick Astley",
            "customUrl": "@rickastleyyt",
            "publishedAt": "2006-03-04T13:22:35Z",
            "country": "GB",
            "thumbnails": {},
        },
        "statistics": {
            "viewCount": "2000000000",
            "subscriberCount": "4000000",
            "hiddenSubscriberCount": hidden,
            "videoCount": "300",
        },
        "brandingSettings": {"channel": {"keywords": "music, pop ,, 80s"}},
    }


def raw_playlist(playlist_id="PLFgquLnL59alCl_2TQvOiD5Vgm1hCaGSI"):
    return {
        "id": playlist_id,
        "snippet": {
            "title": "Greatest Hits",
            "channelId": "UCuAXFkgsw1L7xaCfnd5JJOw",
            "channelTitle": "Rick Astley",
            "publishedAt": "2015-01-01T00:00:00Z",
        },
        "contentDetails": {"itemCount": 42},
        "status": {"privacyStatus": "unlisted"},
    }


def raw_search_result(**id_fields):
    return {
        "kind": "youtube#searchResult",
        "id": {"kind": "youtube#video", **(id_fields or {"videoId": "dQw4w9WgXcQ"})},
        "snippet": {"title": "Result", "channelId": "UC1", "liveBroadcastContent": "live"},
    }


class TestVideoTransform:
    """Test video normalization."""

    def test_full_video(self):
        record = TransformationPipeline().transform(raw_video(), "video")

        assert isinstance(record, VideoRecord)
        assert record.id == "dQw4w9WgXcQ"
        assert record.channel_id == "UCuAXFkgsw1L7xaCfnd5JJOw"
        assert record.duration_seconds == 213
        assert record.view_count == 1500000000
        assert record.like_count == 17000000
        assert record.caption is True
        assert record.published_at == datetime(2009, 10, 25, 6, 57, 33, tzinfo=timezone.utc)
        assert record.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
        assert record.is_live is False

    def test_thumbnails_ordered_by_resolution(self):
        record = TransformationPipeline().transform(raw_video(), "video")

        assert [t.key for t in record.thumbnails] == ["high", "medium", "default"]

    def test_hidden_counters_are_unknown_not_zero(self):
        item = raw_video(statistics={"viewCount": "10"})

        record = TransformationPipeline().transform(item, "video")

        assert record.view_count == 10
        assert record.like_count is None
        assert record.comment_count is None

    def test_missing_optional_sections(self):
        item = raw_video()
        del item["statistics"]
        del item["contentDetails"]

        record = TransformationPipeline().transform(item, "video")

        assert record.duration_seconds == 0
        assert record.view_count == 0

    def test_long_duration(self):
        item = raw_video(contentDetails={"duration": "P1DT2H3M4S"})

        record = TransformationPipeline().transform(item, "video")

        assert record.duration_seconds == 86400 + 7384

    def test_missing_id_is_validation_error(self):
        item = raw_video()
        del item["id"]

        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform(item, "video")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR
        assert exc_info.value.error.detail == "video: id: Field required"

    def test_non_numeric_count_is_validation_error(self):
        item = raw_video(statistics={"viewCount": "lots"})

        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform(item, "video")

        assert "statistics.viewCount" in exc_info.value.error.detail

    def test_bad_duration_is_validation_error(self):
        item = raw_video(contentDetails={"duration": "three minutes"})

        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform(item, "video")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    def test_video_without_channel_is_rejected(self):
        item = raw_video()
        del item["snippet"]["channelId"]

        with pytest.raises(GatewayError):
            TransformationPipeline().transform(item, "video")


class TestOtherKinds:
    def test_channel(self):
        record = TransformationPipeline().transform(raw_channel(), "channel")

        assert record.subscriber_count == 4000000
        assert record.video_count == 300
        assert record.keywords == ("music", "pop", "80s")
        assert record.custom_url == "@rickastleyyt"

    def test_hidden_subscriber_count(self):
        record = TransformationPipeline().transform(raw_channel(hidden=True), "channel")

        assert record.subscriber_count is None

    def test_playlist(self):
        record = TransformationPipeline().transform(raw_playlist(), "playlist")

        assert record.item_count == 42
        assert record.privacy_status == "unlisted"
        assert record.url.endswith("list=PLFgquLnL59alCl_2TQvOiD5Vgm1hCaGSI")

    def test_playlist_item(self):
        raw = {
            "id": "UExGZ3F1",
            "snippet": {
                "title": "Track 1",
                "playlistId": "PL1",
                "position": 0,
                "resourceId": {"kind": "youtube#video", "videoId": "dQw4w9WgXcQ"},
            },
        }

        record = TransformationPipeline().transform(raw, "playlist_item")

        assert record.video_id == "dQw4w9WgXcQ"
        assert record.position == 0
        assert record.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    @pytest.mark.parametrize(
        "id_fields,result_type,expected_id",
        [
            ({"videoId": "v1"}, "video", "v1"),
            ({"channelId": "c1"}, "channel", "c1"),
            ({"playlistId": "p1"}, "playlist", "p1"),
        ],
    )
    def test_search_result_types(self, id_fields, result_type, expected_id):
        record = TransformationPipeline().transform(raw_search_result(**id_fields), "search_result")

        assert record.result_type == result_type
        assert record.id == expected_id

    def test_search_result_without_identifier(self):
        raw = raw_search_result()
        raw["id"] = {"kind": "youtube#video"}

        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform(raw, "search_result")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    def test_unknown_kind(self):
        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform({}, "comment")

        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST

    def test_non_object_item(self):
        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform(["not", "an", "object"], "video")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR


class TestDeterminism:
    """Test that identical input yields identical output."""

    def test_canonical_json_is_byte_identical(self):
        first = TransformationPipeline(cache_size=0).transform(raw_video(), "video")
        second = TransformationPipeline(cache_size=0).transform(copy.deepcopy(raw_video()), "video")

        assert canonical_json(first) == canonical_json(second)

    def test_key_order_does_not_matter(self):
        item = raw_video()
        reordered = dict(reversed(list(item.items())))

        assert fingerprint(item, "video") == fingerprint(reordered, "video")

    def test_records_are_frozen(self):
        record = TransformationPipeline().transform(raw_video(), "video")

        with pytest.raises(Exception):
            record.title = "changed"

    def test_records_reject_unknown_fields(self):
        with pytest.raises(Exception):
            VideoRecord(id="x", title="t", channel_id="c", url="u", extra_field=1)


class TestMemoization:
    def test_cache_hit(self):
        pipeline = TransformationPipeline(cache_size=10)

        first = pipeline.transform(raw_video(), "video")
        second = pipeline.transform(raw_video(), "video")

        assert first is second
        assert pipeline.cache_info()["hits"] == 1
        assert pipeline.cache_info()["misses"] == 1

    def test_cache_is_bounded(self):
        pipeline = TransformationPipeline(cache_size=2)

        for n in range(5):
            pipeline.transform(raw_video(video_id=f"vid{n}"), "video")

        assert pipeline.cache_info()["size"] == 2

    def test_cached_record_cannot_be_mutated(self):
        pipeline = TransformationPipeline(cache_size=10)
        first = pipeline.transform(raw_video(), "video")
        expected = canonical_json(first)

        assert isinstance(first.tags, tuple)
        assert isinstance(first.thumbnails, tuple)
        with pytest.raises(AttributeError):
            first.tags.append("injected")

        second = pipeline.transform(raw_video(), "video")

        assert second.tags == ("rick astley", "80s")
        assert canonical_json(second) == expected

    def test_same_payload_different_kind_not_shared(self):
        assert fingerprint({"id": "x"}, "video") != fingerprint({"id": "x"}, "channel")

    def test_clear_cache(self):
        pipeline = TransformationPipeline()
        pipeline.transform(raw_video(), "video")

        pipeline.clear_cache()

        assert pipeline.cache_info()["size"] == 0


class TestBatch:
    """Test partial batch results."""

    def test_one_malformed_item_in_five(self):
        items = [raw_video(video_id=f"vid{n}") for n in range(5)]
        del items[2]["snippet"]["title"]

        result = TransformationPipeline().transform_batch(items, "video")

        assert len(result.records) == 4
        assert len(result.errors) == 1
        assert result.errors[0].index == 2
        assert result.errors[0].item_id == "vid2"
        assert result.errors[0].error.kind == ErrorKind.VALIDATION_ERROR
        assert [r.id for r in result.records] == ["vid0", "vid1", "vid3", "vid4"]

    def test_item_error_to_dict(self):
        result = TransformationPipeline().transform_batch([{"id": "broken"}], "video")

        data = result.errors[0].to_dict()

        assert data["index"] == 0
        assert data["item_id"] == "broken"
        assert data["error"] == "validation_error"

    def test_unknown_kind_fails_whole_batch(self):
        with pytest.raises(GatewayError):
            TransformationPipeline().transform_batch([raw_video()], "comment")


class TestTransformResponse:
    def test_page_fields(self):
        body = {
            "kind": "youtube#searchListResponse",
            "nextPageToken": "CAUQAA",
            "pageInfo": {"totalResults": 1000000, "resultsPerPage": 1},
            "items": [raw_search_result()],
        }

        page = TransformationPipeline().transform_response("search", body)

        assert len(page.records) == 1
        assert page.next_page_token == "CAUQAA"
        assert page.total_results == 1000000

    def test_missing_items_is_empty_page(self):
        page = TransformationPipeline().transform_response("videos.list", {"kind": "youtube#videoListResponse"})

        assert page.records == []
        assert page.next_page_token is None

    def test_items_not_a_list(self):
        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform_response("videos.list", {"items": {}})

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    def test_operation_without_record_kind(self):
        with pytest.raises(GatewayError) as exc_info:
            TransformationPipeline().transform_response("commentThreads.list", {"items": []})

        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST

    def test_item_identifier(self):
        assert item_identifier({"id": "abc"}) == "abc"
        assert item_identifier({"id": {"channelId": "UC1"}}) == "UC1"
        assert item_identifier("junk") is None
