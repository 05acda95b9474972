"""
Artifact Storage - Cloud Upload for Generated Reports

Uploads report artifacts to OneDrive through Microsoft Graph and resolves
shared links into direct download URLs.

Capability boundary:
- TokenProvider.get_token()          obtain a valid bearer token
- OneDriveStore.upload()             bytes -> shareable web URL
- OneDriveStore.resolve_download()   shared link -> direct download URL

ArtifactUploader wraps the store: an authorization failure triggers exactly
one forced token refresh and one retry. A second failure is fatal.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from pathlib import Path
from typing import Callable, Final, Optional, Protocol, TypeVar
from urllib.parse import quote

import requests

from core.errors import AuthError, ReportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Constants
# =============================================================================

GRAPH_BASE_URL: Final[str] = "https://graph.microsoft.com/v1.0"
TOKEN_URL_TEMPLATE: Final[str] = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
GRAPH_SCOPE: Final[str] = "https://graph.microsoft.com/.default"

# Tokens are treated as expired this long before their real expiry
TOKEN_EXPIRY_BUFFER_SECONDS: Final[int] = 5 * 60

# Graph simple upload limit; larger buffers go through an upload session
SIMPLE_UPLOAD_LIMIT_BYTES: Final[int] = 4 * 1024 * 1024
# Upload session chunks must be multiples of 320 KiB
UPLOAD_CHUNK_BYTES: Final[int] = 320 * 1024 * 12


class StorageError(ReportError):
    """Upload or link resolution failed for a reason other than authorization."""


# =============================================================================
# Tokens
# =============================================================================


class TokenProvider(Protocol):
    """Source of bearer tokens for the storage API."""

    def get_token(self, force_refresh: bool = False) -> str:
        ...


class GraphTokenManager:
    """
    Client-credentials token manager for Microsoft Graph.

    Tokens are cached in memory and, when a cache path is configured,
    in a JSON file so local restarts reuse a live token. File access is
    best-effort: read-only filesystems fall back to memory only.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        cache_path: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._cache_path = Path(cache_path) if cache_path else None
        self._session = session or requests.Session()
        self._timeout = timeout
        self._memory_tokens: Optional[dict] = None

    @staticmethod
    def is_expired(tokens: Optional[dict], now: Optional[float] = None) -> bool:
        """True when tokens are missing or within the expiry buffer."""
        if not tokens or not tokens.get("access_token") or not tokens.get("expires_at"):
            return True
        current = time.time() if now is None else now
        return current >= float(tokens["expires_at"]) - TOKEN_EXPIRY_BUFFER_SECONDS

    def _stored_tokens(self) -> Optional[dict]:
        if self._memory_tokens:
            return self._memory_tokens
        if self._cache_path and self._cache_path.exists():
            try:
                self._memory_tokens = json.loads(self._cache_path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Ignoring unreadable token cache {self._cache_path}: {e}")
        return self._memory_tokens

    def _save_tokens(self, tokens: dict) -> None:
        self._memory_tokens = tokens
        if not self._cache_path:
            return
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache_path.write_text(json.dumps(tokens, indent=2))
        except OSError:
            logger.debug("Token cache not writable, keeping tokens in memory only")

    def request_token(self) -> dict:
        """
        Request a fresh token with the client-credentials grant.

        Raises:
            AuthError: If credentials are missing or the grant is refused
        """
        if not (self._tenant_id and self._client_id and self._client_secret):
            raise AuthError("Storage credentials not configured")

        try:
            response = self._session.post(
                TOKEN_URL_TEMPLATE.format(tenant=self._tenant_id),
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise AuthError("Token request failed", detail=str(e)) from e

        if not response.ok:
            raise AuthError(
                f"Token request failed: {response.status_code}",
                detail=response.text[:500],
            )

        data = response.json()
        if not data.get("access_token"):
            raise AuthError("Failed to retrieve access token")

        tokens = {
            "access_token": data["access_token"],
            "token_type": data.get("token_type", "Bearer"),
            "expires_in": data.get("expires_in", 3600),
            "expires_at": time.time() + float(data.get("expires_in", 3600)),
        }
        self._save_tokens(tokens)
        return tokens

    def get_token(self, force_refresh: bool = False) -> str:
        """Return a valid access token, requesting a new one when needed."""
        tokens = None if force_refresh else self._stored_tokens()
        if self.is_expired(tokens):
            logger.info("No valid storage token cached, requesting a new one")
            tokens = self.request_token()
        return tokens["access_token"]


# =============================================================================
# OneDrive Store
# =============================================================================


def encode_sharing_url(shared_url: str) -> str:
    """Graph share id: 'u!' + unpadded URL-safe base64 of the link."""
    encoded = base64.urlsafe_b64encode(shared_url.encode("utf-8")).decode("ascii")
    return "u!" + encoded.rstrip("=")


class OneDriveStore:
    """Thin Graph client for one user's drive."""

    def __init__(
        self,
        user_email: str,
        folder: str = "photos",
        session: Optional[requests.Session] = None,
        timeout: int = 60,
    ):
        self._user_email = user_email
        self._folder = folder.strip("/")
        self._session = session or requests.Session()
        self._timeout = timeout

    def remote_path(self, record_id: str, filename: str) -> str:
        return f"/{self._folder}/{record_id}/{filename}"

    def _item_url(self, remote_path: str, suffix: str) -> str:
        return f"{GRAPH_BASE_URL}/users/{quote(self._user_email)}/drive/root:{quote(remote_path)}:/{suffix}"

    @staticmethod
    def _check(response: requests.Response, action: str) -> dict:
        if response.status_code in (401, 403):
            raise AuthError(f"{action} rejected: {response.status_code}", detail=response.text[:500])
        if not response.ok:
            raise StorageError(f"{action} failed: {response.status_code}", detail=response.text[:500])
        return response.json() if response.content else {}

    def upload(self, data: bytes, remote_path: str, token: str) -> str:
        """
        Upload bytes and return the item's web URL.

        Raises:
            AuthError: On 401/403
            StorageError: On any other failure
        """
        try:
            if len(data) <= SIMPLE_UPLOAD_LIMIT_BYTES:
                response = self._session.put(
                    self._item_url(remote_path, "content"),
                    data=data,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/octet-stream",
                    },
                    timeout=self._timeout,
                )
                item = self._check(response, "Upload")
            else:
                item = self._upload_in_chunks(data, remote_path, token)
        except requests.RequestException as e:
            raise StorageError("Upload failed", detail=str(e)) from e

        web_url = item.get("webUrl")
        if not web_url:
            raise StorageError("Upload response did not include a web URL")
        return web_url

    def _upload_in_chunks(self, data: bytes, remote_path: str, token: str) -> dict:
        response = self._session.post(
            self._item_url(remote_path, "createUploadSession"),
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._timeout,
        )
        upload_url = self._check(response, "Upload session").get("uploadUrl")
        if not upload_url:
            raise StorageError("Upload session did not return an upload URL")

        total = len(data)
        item: dict = {}
        for start in range(0, total, UPLOAD_CHUNK_BYTES):
            chunk = data[start:start + UPLOAD_CHUNK_BYTES]
            end = start + len(chunk) - 1
            # Pre-authenticated URL: no bearer header on chunk requests
            response = self._session.put(
                upload_url,
                data=chunk,
                headers={
                    "Content-Length": str(len(chunk)),
                    "Content-Range": f"bytes {start}-{end}/{total}",
                },
                timeout=self._timeout,
            )
            item = self._check(response, "Chunk upload")
        return item

    def resolve_download_url(self, shared_url: str, token: str) -> str:
        """
        Resolve a shared link into a direct, unauthenticated download URL.

        Raises:
            AuthError: On 401/403
            StorageError: On any other failure
        """
        try:
            response = self._session.get(
                f"{GRAPH_BASE_URL}/shares/{encode_sharing_url(shared_url)}/driveItem",
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise StorageError("Share resolution failed", detail=str(e)) from e

        item = self._check(response, "Share resolution")
        download_url = item.get("@microsoft.graph.downloadUrl")
        if not download_url:
            raise StorageError("Shared item has no download URL")
        return download_url


# =============================================================================
# Uploader
# =============================================================================


class ArtifactUploader:
    """Uploads artifacts with a single token-refresh retry on auth failure."""

    def __init__(self, tokens: TokenProvider, store: OneDriveStore):
        self._tokens = tokens
        self._store = store

    def _with_token(self, action: str, operation: Callable[[str], T]) -> T:
        try:
            return operation(self._tokens.get_token())
        except AuthError as first:
            logger.warning(f"{action}: authorization failed ({first.message}), refreshing token once")
        return operation(self._tokens.get_token(force_refresh=True))

    def upload(self, data: bytes, record_id: str, filename: str) -> str:
        """
        Upload a buffer under a logical name for a record.

        Returns:
            Shareable URL of the uploaded artifact

        Raises:
            AuthError: If authorization fails after one refresh
            StorageError: On other upload failures
        """
        if not data:
            raise StorageError(f"Refusing to upload empty artifact {filename}")
        remote_path = self._store.remote_path(record_id, filename)
        url = self._with_token(
            f"Upload {filename}",
            lambda token: self._store.upload(data, remote_path, token),
        )
        logger.info(f"Uploaded {filename} ({len(data)} bytes) for record {record_id}")
        return url

    def resolve_download_url(self, shared_url: str) -> str:
        """Direct download URL for a shared link, same retry policy as upload."""
        return self._with_token(
            "Resolve shared link",
            lambda token: self._store.resolve_download_url(shared_url, token),
        )


def is_shared_drive_link(url: str) -> bool:
    """True for OneDrive / SharePoint sharing links that need resolution."""
    lowered = url.lower()
    return any(host in lowered for host in ("1drv.ms", "onedrive.live.com", "sharepoint.com"))
