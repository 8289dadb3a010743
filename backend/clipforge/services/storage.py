"""
Object storage for uploaded media.

Files live under ``DATA_DIR/uploads/<user>/``; reads go through
HMAC-signed, expiring URLs served by routes_files.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
import uuid
from pathlib import Path
from urllib.parse import quote, urlencode

from clipforge.errors import InvalidRequest, NotFound, StorageUnavailable
from clipforge.settings import get_settings

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class LocalMediaStorage:
    def __init__(self, root: Path | None = None, *, base_url: str | None = None, secret: str | None = None):
        settings = get_settings()
        self.root = Path(root or Path(settings.data_dir) / "uploads")
        self.base_url = (base_url or settings.public_base_url).rstrip("/")
        self.secret = (secret or settings.storage_signing_secret).encode()
        self.ttl = settings.signed_url_ttl_sec

    def _path(self, key: str) -> Path:
        if ".." in key.split("/") or key.startswith("/"):
            raise InvalidRequest("Invalid storage key")
        return self.root / key

    def put_upload(self, user_id: str, filename: str, data: bytes) -> str:
        """Store bytes and return the storage key."""
        safe = _SAFE_NAME.sub("_", Path(filename).name) or "upload.bin"
        key = f"{_SAFE_NAME.sub('_', user_id)}/{int(time.time())}-{uuid.uuid4().hex[:8]}-{safe}"
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageUnavailable(f"upload write failed: {e.strerror}") from e
        logger.info(f"[storage] stored {len(data)} bytes as {key}")
        return key

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def _signature(self, key: str, expires: int) -> str:
        return hmac.new(self.secret, f"{key}:{expires}".encode(), hashlib.sha256).hexdigest()

    def signed_get(self, key: str, *, ttl_sec: int | None = None) -> str:
        expires = int(time.time()) + (ttl_sec or self.ttl)
        query = urlencode({"expires": expires, "sig": self._signature(key, expires)})
        return f"{self.base_url}/files/uploads/{quote(key)}?{query}"

    def open_signed(self, key: str, expires: int, sig: str) -> Path:
        """Verify a signed URL's parameters and return the file path."""
        if expires < int(time.time()):
            raise InvalidRequest("Signed URL expired")
        if not hmac.compare_digest(self._signature(key, expires), sig):
            raise InvalidRequest("Invalid signature")
        path = self._path(key)
        if not path.is_file():
            raise NotFound("File not found")
        return path


_storage: LocalMediaStorage | None = None


def get_storage() -> LocalMediaStorage:
    global _storage
    if _storage is None:
        _storage = LocalMediaStorage()
    return _storage


def set_storage(storage: LocalMediaStorage | None) -> None:
    global _storage
    _storage = storage


def resolve_media_url(content) -> str | None:
    """Fetchable URL for a Content's media: a fresh signed URL for uploads,
    otherwise whatever was resolved at import time."""
    if content.storage_key:
        return get_storage().signed_get(content.storage_key)
    return content.media_url or content.source_locator
