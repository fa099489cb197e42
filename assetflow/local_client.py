"""
LocalClient - Filesystem object store mirroring the S3Client interface.

Used for development deployments without S3 and by the test suite.
"""

import logging
import os
import secrets
import shutil
import tempfile
from contextlib import contextmanager
from typing import Optional
from urllib.parse import quote, urlencode

from .errors import ObjectNotFoundError, TransientStorageError
from .storage_config import Location, LocalConfig, join_key
from .tokens import get_timestamp, sign_upload, verify_upload


class LocalClient:
    """
    Stores objects as files below ``config.root_path``.

    Signed write URLs point at the server's ``PUT /upload/<key>`` route
    and carry an expiring HMAC token.
    """

    def __init__(self, config: LocalConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.signing_key = config.signing_key or secrets.token_hex(16)

    def object_key(self, location: Location, key: str) -> str:
        return join_key(self.config.prefix_for(location), key)

    def location_prefix(self, location: Location) -> str:
        prefix = self.config.prefix_for(location).strip('/')
        return f"{prefix}/" if prefix else ''

    def _path(self, location: Location, key: str) -> str:
        root = os.path.realpath(self.config.root_path)
        path = os.path.realpath(os.path.join(root, self.object_key(location, key)))
        if os.path.commonpath([root, path]) != root:
            raise TransientStorageError(f"Key escapes storage root: {key}")
        return path

    @contextmanager
    def _storage_errors(self, operation: str, location: Location, key: str):
        try:
            yield
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"{operation} {location.value}:{key}: object not found") from e
        except OSError as e:
            self.logger.error(f"Local {operation} failed for {location.value}:{key}: {e}")
            raise TransientStorageError(f"{operation} {location.value}:{key} failed: {e}") from e

    def exists(self, location: Location, key: str) -> bool:
        return os.path.isfile(self._path(location, key))

    def read(self, location: Location, key: str) -> bytes:
        with self._storage_errors('read', location, key):
            with open(self._path(location, key), 'rb') as f:
                return f.read()

    def write(
        self,
        location: Location,
        key: str,
        data: bytes,
        content_type: str = 'application/octet-stream'
    ) -> None:
        path = self._path(location, key)
        with self._storage_errors('write', location, key):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix='.upload_')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise

    def copy(self, src_location: Location, src_key: str, dst_location: Location, dst_key: str) -> None:
        src = self._path(src_location, src_key)
        dst = self._path(dst_location, dst_key)
        with self._storage_errors('copy', src_location, src_key):
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            # using shutil to account for mounted filesystem
            shutil.copyfile(src, dst)
        self.logger.debug(f"Copied {src_location.value}:{src_key} -> {dst_location.value}:{dst_key}")

    def delete(self, location: Location, key: str) -> None:
        with self._storage_errors('delete', location, key):
            os.remove(self._path(location, key))

    def signed_write_url(self, location: Location, key: str, content_type: str, ttl_seconds: int) -> str:
        if location != Location.STAGING:
            raise TransientStorageError("Local signed uploads are only available for the staging location")
        expires_at = get_timestamp() + ttl_seconds
        query = urlencode({'token': sign_upload(key, expires_at, self.signing_key)})
        return f"{self.config.upload_base_url.rstrip('/')}/upload/{quote(key)}?{query}"

    def verify_write_token(self, key: str, token: str) -> None:
        """Raise TokenException unless token authorises a staging write to key."""
        verify_upload(token, key, self.signing_key)

    def public_url(self, location: Location, key: str) -> str:
        return f"{self.config.public_base_url.rstrip('/')}/{quote(self.object_key(location, key))}"
