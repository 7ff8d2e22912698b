"""Tests for the compress and stream stage processors."""

import json
import subprocess

from google.api_core import exceptions as gcs_exceptions
import httpx
import pytest

from assetflow.errors import TransientStorageError
from assetflow.metadata import ProcessingQueueItem
from assetflow.processors import (
    CompressProcessor,
    StreamProcessor,
    build_ffmpeg_command,
    compressed_key,
)
from assetflow.settings import settings


class FakeBlob:
    def __init__(self, bucket, key):
        self.bucket = bucket
        self.key = key

    def download_to_filename(self, path):
        if self.key not in self.bucket.objects:
            raise gcs_exceptions.NotFound(f"No such object: {self.key}")
        with open(path, "wb") as handle:
            handle.write(self.bucket.objects[self.key])

    def upload_from_filename(self, path, content_type=None):
        with open(path, "rb") as handle:
            self.bucket.objects[self.key] = handle.read()
        self.bucket.content_types[self.key] = content_type


class FakeBucket:
    def __init__(self):
        self.objects = {}
        self.content_types = {}

    def blob(self, key):
        return FakeBlob(self, key)


class FakeStorageClient:
    def __init__(self):
        self.buckets = {}

    def bucket(self, name):
        return self.buckets.setdefault(name, FakeBucket())


def _item(source_key="videos/a1/clip.mov", stage="compress"):
    return ProcessingQueueItem(asset_id="a1", version_id="v1", source_key=source_key, stage=stage)


@pytest.mark.parametrize(
    "source,expected",
    [
        ("videos/a/clip.mov", "videos/a/clip-compressed.mov"),
        ("clip.mp4", "clip-compressed.mp4"),
        ("videos/a/noext", "videos/a/noext-compressed"),
        ("videos/a/my.final.cut.mov", "videos/a/my.final.cut-compressed.mov"),
    ],
)
def test_compressed_key(source, expected):
    assert compressed_key(source) == expected


def test_ffmpeg_command():
    command = build_ffmpeg_command("ffmpeg", "/tmp/in.mov", "/tmp/out.mov")

    assert command[0] == "ffmpeg"
    assert command[-1] == "/tmp/out.mov"
    assert command[command.index("-i") + 1] == "/tmp/in.mov"
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[command.index("-crf") + 1] == "23"
    assert "+faststart" in command


class TestCompressProcessor:
    def test_transcodes_and_uploads(self):
        client = FakeStorageClient()
        client.bucket("assets").objects["videos/a1/clip.mov"] = b"raw-bytes"
        commands = []

        def runner(command, **kwargs):
            commands.append(command)
            with open(command[-1], "wb") as handle:
                handle.write(b"small")
            return subprocess.CompletedProcess(command, 0, "", "")

        processor = CompressProcessor(storage_client=client, bucket_name="assets", ffmpeg_binary="ffmpeg", runner=runner)
        result = processor(_item())

        assert result.output_key == "videos/a1/clip-compressed.mov"
        assert result.output_size == 5
        assert client.bucket("assets").objects["videos/a1/clip-compressed.mov"] == b"small"
        assert commands[0][0] == "ffmpeg"

    def test_nonzero_exit_is_transient(self):
        client = FakeStorageClient()
        client.bucket("assets").objects["videos/a1/clip.mov"] = b"raw-bytes"

        def runner(command, **kwargs):
            return subprocess.CompletedProcess(command, 1, "", "Invalid data found when processing input")

        processor = CompressProcessor(storage_client=client, bucket_name="assets", runner=runner)

        with pytest.raises(TransientStorageError) as exc_info:
            processor(_item())

        assert "Invalid data found" in exc_info.value.message
        assert "videos/a1/clip-compressed.mov" not in client.bucket("assets").objects

    def test_timeout_is_transient(self):
        client = FakeStorageClient()
        client.bucket("assets").objects["videos/a1/clip.mov"] = b"raw-bytes"

        def runner(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs["timeout"])

        processor = CompressProcessor(storage_client=client, bucket_name="assets", timeout_seconds=5, runner=runner)

        with pytest.raises(TransientStorageError):
            processor(_item())

    def test_missing_source(self):
        processor = CompressProcessor(storage_client=FakeStorageClient(), bucket_name="assets")

        with pytest.raises(TransientStorageError) as exc_info:
            processor(_item())

        assert "not found" in exc_info.value.message


class TestStreamProcessor:
    def _processor(self, handler):
        return StreamProcessor(
            api_url="https://video.example/accounts/123/stream/",
            api_token="secret-token",
            timeout=2,
            signer=lambda key: f"https://storage.example/{key}?sig=abc",
            transport=httpx.MockTransport(handler),
        )

    def test_copies_and_returns_playback_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(200, json={"success": True, "result": {"uid": "vid42"}})
            return httpx.Response(
                200,
                json={"success": True, "result": {"uid": "vid42", "playback": {"hls": "https://cdn.example/vid42.m3u8"}}},
            )

        result = self._processor(handler)(_item("videos/a1/clip-compressed.mov", stage="stream"))

        assert result.stream_id == "vid42"
        assert result.playback_url == "https://cdn.example/vid42.m3u8"
        assert result.output_key == "videos/a1/clip-compressed.mov"
        copy_request, details_request = seen
        assert str(copy_request.url) == "https://video.example/accounts/123/stream/copy"
        assert copy_request.headers["Authorization"] == "Bearer secret-token"
        body = json.loads(copy_request.content)
        assert body["url"] == "https://storage.example/videos/a1/clip-compressed.mov?sig=abc"
        assert body["meta"] == {"assetId": "a1", "versionId": "v1"}
        assert str(details_request.url) == "https://video.example/accounts/123/stream/vid42"

    def test_api_error_is_transient(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(TransientStorageError) as exc_info:
            self._processor(handler)(_item(stage="stream"))

        assert "502" in exc_info.value.message

    def test_unsuccessful_payload(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "errors": [{"message": "quota"}]})

        with pytest.raises(TransientStorageError):
            self._processor(handler)(_item(stage="stream"))

    def test_missing_uid(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "result": {}})

        with pytest.raises(TransientStorageError):
            self._processor(handler)(_item(stage="stream"))

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientStorageError):
            self._processor(handler)(_item(stage="stream"))

    def test_requires_api_url(self, monkeypatch):
        monkeypatch.setattr(settings, "distribution_api_url", None)
        processor = StreamProcessor(api_url=None, signer=lambda key: key)

        with pytest.raises(TransientStorageError):
            processor(_item(stage="stream"))
