import pytest

from tubegate.core.metadata import (
    download_urls_from_formats,
    format_duration,
    format_upload_date,
    format_views,
    is_youtube_url,
    playlist_id_from_url,
    thumbnail_urls,
    truncate_description,
    video_metadata_from_info,
)


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "0:00"), (59, "0:59"), (213, "3:33"), (3600, "1:00:00"), (3725, "1:02:05"), (-5, "0:00")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_format_views():
    assert format_views(1234567) == "1,234,567 views"
    assert format_views(0) == "0 views"
    assert format_views(None) == "Unknown views"


def test_format_upload_date():
    assert format_upload_date("20240102") == "2024-01-02"
    assert format_upload_date(None) == "Unknown date"
    assert format_upload_date("2024") == "2024"


def test_truncate_description():
    assert truncate_description(None) == ""
    assert truncate_description("short") == "short"
    assert truncate_description("x" * 200) == "x" * 200

    long = truncate_description("y" * 500)
    assert long == "y" * 200 + "..."


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "http://m.youtube.com/watch?v=abc",
        "youtube.com/playlist?list=PL123",
    ],
)
def test_accepts_youtube_urls(url):
    assert is_youtube_url(url)


@pytest.mark.parametrize(
    "url",
    ["", "https://vimeo.com/123", "https://youtube.com/", "https://notyoutube.com/watch?v=1", "ftp://youtu.be/x"],
)
def test_rejects_other_urls(url):
    assert not is_youtube_url(url)


def test_playlist_id_from_url():
    assert playlist_id_from_url("https://www.youtube.com/playlist?list=PL123") == "PL123"
    assert playlist_id_from_url("https://www.youtube.com/watch?v=a&list=PLxyz&index=2") == "PLxyz"
    assert playlist_id_from_url("https://www.youtube.com/watch?v=a") is None
    assert playlist_id_from_url("https://www.youtube.com/playlist?list=") is None


def test_download_urls_prefers_mp4_and_best_audio():
    formats = [
        {"url": "u-webm-360", "vcodec": "vp9", "acodec": "opus", "height": 360, "ext": "webm"},
        {"url": "u-mp4-360", "vcodec": "avc1", "acodec": "mp4a", "height": 360, "ext": "mp4"},
        {"url": "u-mp4-720", "vcodec": "avc1", "acodec": "mp4a", "height": 720, "ext": "mp4"},
        {"url": "u-video-only", "vcodec": "avc1", "acodec": "none", "height": 1080, "ext": "mp4"},
        {"url": "u-audio-low", "vcodec": "none", "acodec": "opus", "abr": 48},
        {"url": "u-audio-high", "vcodec": "none", "acodec": "mp4a", "abr": 128},
        {"vcodec": "avc1", "acodec": "mp4a", "height": 240},
    ]

    assert download_urls_from_formats(formats) == {
        "360p": "u-mp4-360",
        "720p": "u-mp4-720",
        "audio": "u-audio-high",
    }


def test_download_urls_empty():
    assert download_urls_from_formats([]) == {}


def test_video_metadata_from_info():
    info = {
        "id": "abc123",
        "title": "A video",
        "description": "d" * 250,
        "duration": 213,
        "uploader": "Someone",
        "view_count": 1000,
        "upload_date": "20240102",
        "thumbnail": "https://i.ytimg.com/vi/abc123/hq.jpg",
        "formats": [{"url": "u", "vcodec": "avc1", "acodec": "mp4a", "height": 480, "ext": "mp4"}],
    }

    meta = video_metadata_from_info(info)

    assert meta.video_id == "abc123"
    assert meta.duration == "3:33"
    assert meta.views == "1,000 views"
    assert meta.upload_date == "2024-01-02"
    assert meta.author == "Someone"
    assert meta.description.endswith("...")
    assert meta.download_urls == {"480p": "u"}
    assert meta.thumbnails == thumbnail_urls("abc123")


def test_video_metadata_without_thumbnails_and_sparse_info():
    meta = video_metadata_from_info({"id": "zzz", "thumbnails": [{"url": "t1"}, {"url": "t2"}]}, include_thumbnails=False)

    assert meta.thumbnails == {}
    assert meta.thumbnail == "t2"
    assert meta.title == ""
    assert meta.author == "Unknown"
    assert meta.views == "Unknown views"
    assert meta.duration == "0:00"
