"""Stage processors run by the queue worker.

``compress`` re-encodes the uploaded source with ffmpeg and stores the
result beside it; ``stream`` hands the object to the video distribution
API and returns the playback URL. Anything worth retrying is raised as
``TransientStorageError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
import os
from pathlib import Path
import subprocess
import tempfile
from typing import Callable, Optional

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage
import httpx

from assetflow.errors import TransientStorageError
from assetflow.metadata import ProcessingQueueItem
from assetflow.processing_queue import STAGE_COMPRESS, STAGE_STREAM
from assetflow.settings import settings

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2000


@dataclass
class ProcessingResult:
    output_key: str
    output_size: Optional[int] = None
    playback_url: Optional[str] = None
    stream_id: Optional[str] = None


Processor = Callable[[ProcessingQueueItem], ProcessingResult]


def compressed_key(source_key: str) -> str:
    """``videos/a/clip.mov`` -> ``videos/a/clip-compressed.mov``."""
    head, sep, name = str(source_key).rpartition("/")
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        renamed = f"{name}-compressed"
    else:
        renamed = f"{stem}-compressed.{ext}"
    return f"{head}{sep}{renamed}"


def build_ffmpeg_command(binary: str, input_path: str, output_path: str) -> list[str]:
    return [
        binary,
        "-y",
        "-i",
        input_path,
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-crf",
        "23",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-movflags",
        "+faststart",
        output_path,
    ]


class CompressProcessor:
    """Download from the asset bucket, transcode, upload ``-compressed`` copy."""

    def __init__(
        self,
        *,
        storage_client=None,
        bucket_name: Optional[str] = None,
        ffmpeg_binary: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self._storage_client = storage_client
        self.bucket_name = bucket_name or settings.storage_bucket_name
        self.ffmpeg_binary = ffmpeg_binary or settings.ffmpeg_binary
        self.timeout_seconds = int(timeout_seconds or settings.ffmpeg_timeout_seconds)
        self._runner = runner

    @property
    def storage_client(self):
        if self._storage_client is None:
            self._storage_client = storage.Client(project=settings.gcp_project_id)
        return self._storage_client

    def _transcode(self, input_path: str, output_path: str) -> None:
        command = build_ffmpeg_command(self.ffmpeg_binary, input_path, output_path)
        try:
            completed = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise TransientStorageError(f"ffmpeg timed out after {self.timeout_seconds}s")
        except OSError as exc:
            raise TransientStorageError(f"ffmpeg could not be started: {exc}")
        if completed.returncode != 0:
            stderr_tail = str(completed.stderr or "")[-_STDERR_TAIL_CHARS:]
            raise TransientStorageError(f"ffmpeg exited with code {completed.returncode}: {stderr_tail}")

    def __call__(self, item: ProcessingQueueItem) -> ProcessingResult:
        output_key = compressed_key(item.source_key)
        bucket = self.storage_client.bucket(self.bucket_name)
        with tempfile.TemporaryDirectory(prefix="assetflow-compress-") as workdir:
            suffix = Path(item.source_key).suffix or ".mp4"
            input_path = os.path.join(workdir, f"input{suffix}")
            output_path = os.path.join(workdir, f"output{suffix}")
            try:
                bucket.blob(item.source_key).download_to_filename(input_path)
            except gcs_exceptions.NotFound:
                raise TransientStorageError(f"Source object not found: {item.source_key}")
            except gcs_exceptions.GoogleAPICallError as exc:
                raise TransientStorageError(f"Failed to download {item.source_key}: {exc}")

            logger.info("Compressing %s -> %s", item.source_key, output_key)
            self._transcode(input_path, output_path)
            output_size = os.path.getsize(output_path)

            try:
                bucket.blob(output_key).upload_from_filename(output_path, content_type="video/mp4")
            except gcs_exceptions.GoogleAPICallError as exc:
                raise TransientStorageError(f"Failed to upload {output_key}: {exc}")

        logger.info("Compressed %s (%s bytes)", output_key, output_size)
        return ProcessingResult(output_key=output_key, output_size=output_size)


class StreamProcessor:
    """Ask the distribution API to copy the object and report its playback URL."""

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        storage_client=None,
        bucket_name: Optional[str] = None,
        signer: Optional[Callable[[str], str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = str(api_url or settings.distribution_api_url or "").rstrip("/")
        self.api_token = api_token or settings.distribution_api_token
        self.timeout = float(timeout or settings.distribution_timeout_seconds)
        self._storage_client = storage_client
        self.bucket_name = bucket_name or settings.storage_bucket_name
        self._signer = signer
        self._transport = transport

    def _signed_source_url(self, key: str) -> str:
        if self._signer is not None:
            return self._signer(key)
        client = self._storage_client or storage.Client(project=settings.gcp_project_id)
        blob = client.bucket(self.bucket_name).blob(key)
        try:
            return blob.generate_signed_url(expiration=timedelta(hours=1), version="v4", method="GET")
        except gcs_exceptions.GoogleAPICallError as exc:
            raise TransientStorageError(f"Failed to sign {key}: {exc}")

    def _request(self, client: httpx.Client, method: str, path: str, **kwargs) -> dict:
        try:
            response = client.request(method, f"{self.api_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise TransientStorageError(f"Distribution API request failed: {exc}")
        if response.status_code >= 400:
            raise TransientStorageError(
                f"Distribution API error {response.status_code} for {path}: {response.text[:500]}"
            )
        try:
            data = response.json()
        except ValueError:
            raise TransientStorageError(f"Distribution API returned invalid JSON for {path}")
        if not data.get("success", True):
            raise TransientStorageError(f"Distribution API error for {path}: {data.get('errors')}")
        return data.get("result") or {}

    def __call__(self, item: ProcessingQueueItem) -> ProcessingResult:
        if not self.api_url:
            raise TransientStorageError("DISTRIBUTION_API_URL is not configured")
        source_url = self._signed_source_url(item.source_key)
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        with httpx.Client(timeout=self.timeout, transport=self._transport, headers=headers) as client:
            created = self._request(
                client,
                "POST",
                "/copy",
                json={
                    "url": source_url,
                    "meta": {"assetId": item.asset_id, "versionId": item.version_id},
                    "requireSignedURLs": False,
                },
            )
            stream_id = str(created.get("uid") or "").strip()
            if not stream_id:
                raise TransientStorageError("Distribution API did not return a stream id")
            details = self._request(client, "GET", f"/{stream_id}")

        playback = details.get("playback") or {}
        playback_url = playback.get("hls") or playback.get("dash")
        logger.info("Distributed %s as stream %s", item.source_key, stream_id)
        return ProcessingResult(
            output_key=item.source_key,
            playback_url=playback_url,
            stream_id=stream_id,
        )


def default_processors() -> dict[str, Processor]:
    return {
        STAGE_COMPRESS: CompressProcessor(),
        STAGE_STREAM: StreamProcessor(),
    }
