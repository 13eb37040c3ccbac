"""
Object storage access (Supabase Storage).

Bytes are addressed by (bucket, path). Uploaded objects are handed to the
model and to clients as URLs: a signed URL, which works for private buckets,
and a public URL, which only resolves for public buckets.
"""
import logging
import re
from typing import Optional
from urllib.parse import unquote, urlparse

from supabase import Client

from config import SIGNED_URL_TTL_SECONDS, SUPABASE_URL
from exceptions import StorageError
from tracer import trace

# /storage/v1/object/<public|sign|authenticated>/<bucket>/<path>
_OBJECT_URL_PATH = re.compile(r"^/storage/v1/object/(?:public/|sign/|authenticated/)?([^/]+)/(.+)$")


def parse_storage_url(url: str, base_url: str = SUPABASE_URL) -> Optional[tuple[str, str]]:
    """
    Extracts (bucket, path) from a URL on this system's storage host.

    Returns None for URLs on any other host or with an unrecognised path.
    """
    if not url or not base_url:
        return None
    parsed = urlparse(url)
    own = urlparse(base_url)
    if parsed.scheme not in ("http", "https") or parsed.netloc.lower() != own.netloc.lower():
        return None
    match = _OBJECT_URL_PATH.match(parsed.path)
    if not match:
        return None
    return match.group(1), unquote(match.group(2))


class ObjectStorage:
    """Thin wrapper around the supabase storage API with typed failures."""

    def __init__(self, client: Client, base_url: str = SUPABASE_URL):
        self.client = client
        self.base_url = base_url

    @trace
    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """
        Uploads bytes, overwriting any existing object at the same path.

        Returns:
            The object path.
        """
        try:
            self.client.storage.from_(bucket).upload(
                path, data, {"content-type": content_type, "upsert": "true"}
            )
        except Exception as e:
            logging.error(f"Upload to '{bucket}/{path}' failed: {e}")
            raise StorageError(f"Upload to '{bucket}/{path}' failed: {e}") from e
        return path

    @trace
    def signed_url(self, bucket: str, path: str, expires_in: int = SIGNED_URL_TTL_SECONDS) -> str:
        try:
            signed = self.client.storage.from_(bucket).create_signed_url(path, expires_in)
        except Exception as e:
            raise StorageError(f"Could not sign '{bucket}/{path}': {e}") from e
        url = None
        if isinstance(signed, dict):
            url = signed.get("signedURL") or signed.get("signedUrl")
        if not url:
            raise StorageError(f"Could not sign '{bucket}/{path}': empty response")
        return url

    def public_url(self, bucket: str, path: str) -> Optional[str]:
        """Best effort: returns None instead of raising."""
        try:
            url = self.client.storage.from_(bucket).get_public_url(path)
        except Exception as e:
            logging.warning(f"Could not build public URL for '{bucket}/{path}': {e}")
            return None
        return url.rstrip("?") if isinstance(url, str) and url else None

    @trace
    def download(self, bucket: str, path: str) -> bytes:
        try:
            return self.client.storage.from_(bucket).download(path)
        except Exception as e:
            raise StorageError(f"Download of '{bucket}/{path}' failed: {e}") from e

    def upload_with_urls(self, bucket: str, path: str, data: bytes, content_type: str) -> dict[str, Optional[str]]:
        """
        Uploads and returns {path, url, signed_url, public_url}.

        Signing failures are tolerated as long as one URL is available; the
        upload itself must succeed.
        """
        self.upload(bucket, path, data, content_type)
        signed = None
        try:
            signed = self.signed_url(bucket, path)
        except StorageError as e:
            logging.warning(str(e))
        public = self.public_url(bucket, path)
        # A public URL can always be built, but only resolves for public buckets.
        return {"path": path, "url": signed or public, "signed_url": signed, "public_url": public}

    def parse_url(self, url: str) -> Optional[tuple[str, str]]:
        return parse_storage_url(url, self.base_url)
