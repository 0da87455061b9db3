"""
Source Resolver - turns a source reference into a readable local media file.

Supported sources:
- Local file paths
- S3 URLs (s3://bucket/key, virtual-hosted and path-style https URLs) via boto3
- Direct http(s) URLs via httpx
"""

import asyncio
import logging
import os
from typing import Literal, Optional
from urllib.parse import urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from framepatch.config import get_settings
from framepatch.errors import InvalidInput, SourceUnavailable
from framepatch.schemas.requests import SourceReference

logger = logging.getLogger(__name__)


SourceType = Literal["local", "s3", "direct_url"]


def confine_to_data_root(path: str, field_name: str) -> str:
    """
    Resolve a caller-supplied asset path, rejecting anything outside DATA_ROOT.

    Symlinks and ".." are resolved before the check.

    Raises:
        InvalidInput: The path escapes the data directory
    """
    root = os.path.realpath(get_settings().data_root)
    resolved = os.path.realpath(path)
    try:
        inside = os.path.commonpath([root, resolved]) == root
    except ValueError:
        inside = False
    if not inside:
        logger.warning(f"Rejected {field_name} outside the data directory: {path}")
        raise InvalidInput(f"{field_name} must be a file inside the data directory")
    return resolved


class SourceResolver:
    """
    Resolves a SourceReference to a local path, downloading remote media into
    the caller's work directory.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        self._http_client = http_client
        self._s3_client = None

    @property
    def s3_client(self):
        """Lazy-initialize S3 client."""
        if self._s3_client is None:
            config = {
                "region_name": self.settings.aws_region,
            }
            if self.settings.aws_access_key_id and self.settings.aws_secret_access_key:
                config["aws_access_key_id"] = self.settings.aws_access_key_id
                config["aws_secret_access_key"] = self.settings.aws_secret_access_key

            self._s3_client = boto3.client("s3", **config)

        return self._s3_client

    def detect_source_type(self, source: SourceReference) -> SourceType:
        if source.local_path:
            return "local"

        url = source.remote_url or ""
        if url.startswith("s3://"):
            return "s3"

        parsed = urlparse(url)
        if parsed.hostname and (
            ".s3." in parsed.hostname or parsed.hostname.startswith("s3.")
        ) and parsed.hostname.endswith(".amazonaws.com"):
            return "s3"

        return "direct_url"

    async def resolve(self, source: SourceReference, work_dir: str) -> str:
        """
        Resolve a source to a readable local path.

        Args:
            source: Local path or remote URL
            work_dir: Job-owned directory that receives downloads

        Returns:
            Local media file path

        Raises:
            SourceUnavailable: If the source cannot be read or fetched
        """
        source_type = self.detect_source_type(source)
        logger.info(f"Resolving {source_type} source: {source.describe()[:100]}")

        if source_type == "local":
            path = os.path.abspath(os.path.expanduser(source.local_path))
            if not os.path.isfile(path) or not os.access(path, os.R_OK):
                raise SourceUnavailable(f"Source file not readable: {path}", stage="probing")
            return path

        os.makedirs(work_dir, exist_ok=True)
        remote_url = source.remote_url or ""
        ext = os.path.splitext(urlparse(remote_url).path)[1] or ".mp4"
        output_path = os.path.join(work_dir, f"source{ext}")

        if source_type == "s3":
            await self._download_from_s3(remote_url, output_path)
        else:
            await self._download_direct_url(remote_url, output_path)

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise SourceUnavailable(f"Download produced no data: {remote_url}", stage="probing")

        file_size = os.path.getsize(output_path)
        logger.info(f"Source downloaded: {output_path} ({file_size / 1024 / 1024:.1f} MB)")
        return output_path

    async def _download_direct_url(self, url: str, output_path: str) -> None:
        """Download media from a direct URL using httpx."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise SourceUnavailable(f"Unsupported source URL: {url}", stage="probing")

        client = self._http_client or httpx.AsyncClient(
            timeout=self.settings.download_timeout_seconds,
            follow_redirects=True,
        )
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(output_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except httpx.HTTPStatusError as e:
            raise SourceUnavailable(
                f"Source download failed with HTTP {e.response.status_code}: {url}",
                stage="probing",
            )
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Source download failed: {e}", stage="probing")
        finally:
            if self._http_client is None:
                await client.aclose()

    async def _download_from_s3(self, url: str, output_path: str) -> None:
        bucket, key = self._parse_s3_url(url)
        logger.info(f"Downloading source from S3: s3://{bucket}/{key}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.s3_client.download_file(bucket, key, output_path),
            )
        except (ClientError, BotoCoreError) as e:
            raise SourceUnavailable(f"Failed to download from S3: {e}", stage="probing")

    def _parse_s3_url(self, url: str) -> tuple[str, str]:
        """
        Parse an S3 URL into bucket and key.

        Supports formats:
        - s3://bucket/key
        - https://bucket.s3.region.amazonaws.com/key
        - https://s3.region.amazonaws.com/bucket/key
        """
        if url.startswith("s3://"):
            parts = url[5:].split("/", 1)
            if len(parts) != 2 or not parts[1]:
                raise SourceUnavailable(f"Invalid S3 URL: {url}", stage="probing")
            return parts[0], parts[1]

        parsed = urlparse(url)

        # Virtual-hosted style: bucket.s3.region.amazonaws.com/key
        if parsed.hostname and ".s3." in parsed.hostname:
            bucket = parsed.hostname.split(".s3.")[0]
            return bucket, parsed.path.lstrip("/")

        # Path style: s3.region.amazonaws.com/bucket/key
        path_parts = parsed.path.lstrip("/").split("/", 1)
        if len(path_parts) != 2:
            raise SourceUnavailable(f"Invalid S3 URL: {url}", stage="probing")
        return path_parts[0], path_parts[1]
