"""
Client for the object store HTTP gateway holding uploaded audio and
transcription artifacts.
"""
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlparse

from meeting_pipeline.exceptions import ValidationError
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.schemas import ObjectMetadata
from meeting_pipeline.services.base import ProviderClient
from meeting_pipeline.utils import async_retry

logger = get_logger(__name__)

CUSTOM_TAG_PREFIX = "x-amz-meta-"
URI_SCHEMES = ("store", "s3")


def parse_object_uri(uri: str) -> Tuple[str, str]:
    """
    Split an object URI into (container, key).

    Accepts store://container/key, s3://container/key and path-style
    https://host/container/key URLs.

    Raises:
        ValidationError: Unsupported or incomplete URI
    """
    parsed = urlparse(uri or "")
    if parsed.scheme in URI_SCHEMES:
        container, key = parsed.netloc, parsed.path.lstrip("/")
    elif parsed.scheme in ("http", "https"):
        container, _, key = parsed.path.lstrip("/").partition("/")
    else:
        raise ValidationError(f"Unsupported object URI: {uri}")

    if not container or not key:
        raise ValidationError(f"Object URI has no container or key: {uri}")
    return container, key


class ObjectStore(ProviderClient):
    """Metadata and download access to stored objects."""

    PROVIDER = "object_store"

    def __init__(self, base_url: str, token: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.token = token

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _object_url(self, container: str, key: str) -> str:
        return f"{self.base_url}/{quote(container)}/{quote(key)}"

    @staticmethod
    def object_uri(container: str, key: str) -> str:
        return f"store://{container}/{key}"

    @async_retry()
    async def get_metadata(self, container: str, key: str) -> ObjectMetadata:
        """
        Fetch size, content type and custom tags of an object.

        Custom tags are the x-amz-meta-* headers with the prefix stripped.
        """
        response = await self._request("HEAD", self._object_url(container, key), "get_metadata")

        custom_tags = {
            name[len(CUSTOM_TAG_PREFIX):]: value
            for name, value in response.headers.items()
            if name.lower().startswith(CUSTOM_TAG_PREFIX)
        }
        size = response.headers.get("content-length")
        metadata = ObjectMetadata(
            size=int(size) if size and size.isdigit() else None,
            content_type=response.headers.get("content-type"),
            custom_tags=custom_tags,
            last_modified=response.headers.get("last-modified"),
        )
        logger.debug("object_metadata_fetched", container=container, key=key, tags=sorted(custom_tags))
        return metadata

    @async_retry()
    async def download(self, container: str, key: str) -> bytes:
        response = await self._request(
            "GET", self._object_url(container, key), "download", headers={"Accept": "*/*"}
        )
        logger.info("object_downloaded", container=container, key=key, size=len(response.content))
        return response.content

    async def download_uri(self, uri: str) -> bytes:
        container, key = parse_object_uri(uri)
        return await self.download(container, key)

