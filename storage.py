import hashlib
import hmac
import logging
import time
import uuid
from typing import Iterator, Optional, Tuple
from urllib.parse import urlencode

import requests

from config import Config
from errors import AssetFetchError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class StoredFile:
    """An open asset download, streamed in chunks"""

    def __init__(self, response: requests.Response):
        self._response = response
        self.content_type = response.headers.get("Content-Type") or "application/octet-stream"
        self.content_length = response.headers.get("Content-Length")

    def iter_chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        finally:
            self._response.close()


class AssetStorage:
    """Client for the object store holding product files.

    Files are addressed by id and reached through HMAC-signed, time-limited
    URLs, both for downloads and uploads.
    """

    def __init__(self, base_url: Optional[str] = None, signing_key: Optional[str] = None, timeout: int = 30):
        self.base_url = (base_url or Config.STORAGE_BASE_URL).rstrip("/")
        self.signing_key = signing_key if signing_key is not None else Config.STORAGE_SIGNING_KEY
        self.timeout = timeout

    def _signature(self, method: str, file_id: str, expires: int) -> str:
        message = f"{method}:{file_id}:{expires}"
        return hmac.new(self.signing_key.encode(), message.encode(), hashlib.sha256).hexdigest()

    def _signed_url(self, method: str, file_id: str, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self._signature(method, file_id, expires)})
        return f"{self.base_url}/{file_id}?{query}"

    def verify(self, method: str, file_id: str, expires: int, signature: str) -> bool:
        if int(time.time()) > expires:
            return False
        return hmac.compare_digest(signature, self._signature(method, file_id, expires))

    def get_file_url(self, file_id: str, expires_in: Optional[int] = None) -> str:
        return self._signed_url("GET", file_id, expires_in or Config.STORAGE_URL_TTL_SECONDS)

    def generate_upload_url(self, expires_in: Optional[int] = None) -> Tuple[str, str]:
        """Reserve a new file id and return it with a signed PUT URL"""
        file_id = uuid.uuid4().hex
        return file_id, self._signed_url("PUT", file_id, expires_in or Config.STORAGE_URL_TTL_SECONDS)

    def fetch(self, file_id: str) -> StoredFile:
        url = self.get_file_url(file_id)
        try:
            response = requests.get(url, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Asset fetch for %s failed: %s", file_id, e)
            raise AssetFetchError("Failed to fetch file from storage")
        if not response.ok:
            response.close()
            logger.error("Asset fetch for %s returned %s", file_id, response.status_code)
            raise AssetFetchError("Failed to fetch file from storage")
        return StoredFile(response)


def get_storage() -> AssetStorage:
    """FastAPI dependency returning the configured asset storage"""
    return AssetStorage()
