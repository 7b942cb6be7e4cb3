"""HTTP adapter for the remote media store (byte upload + batch commit)."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..errors import (
    AuthExpiredError,
    ClientFaultError,
    InvalidTransferTokenError,
    MigratorError,
    RateLimitedError,
    TransientNetworkError,
)
from ..models import Credential, TransferSession
from ..protocols import CommitResult

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://photoslibrary.googleapis.com/v1"
UPLOADS_ENDPOINT = "/uploads"
BATCH_CREATE_ENDPOINT = "/mediaItems:batchCreate"

# Per-result status codes worth retrying: RESOURCE_EXHAUSTED, DEADLINE_EXCEEDED, INTERNAL, UNAVAILABLE
_RATE_LIMIT_CODES = {8}
_TRANSIENT_CODES = {4, 13, 14}
_INVALID_TOKEN_MARKERS = ("invalid upload token", "expired upload token", "upload token is invalid")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form is not worth parsing here
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"].get("message", str(payload["error"]))
    return str(payload)[:300]


def _mentions_invalid_token(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _INVALID_TOKEN_MARKERS)


def classify_response(response: httpx.Response, operation: str) -> None:
    """Raise the classified error for a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    detail = _error_detail(response)
    message = f"{operation} failed ({status}): {detail}"
    if status == 401:
        raise AuthExpiredError(message, status_code=status)
    if status == 429:
        raise RateLimitedError(message, status_code=status, retry_after=_retry_after(response))
    if status == 408 or status >= 500:
        raise TransientNetworkError(message, status_code=status)
    if operation == "commit" and _mentions_invalid_token(detail):
        raise InvalidTransferTokenError(message, status_code=status)
    raise ClientFaultError(message, status_code=status)


def classify_commit_status(status: Optional[Dict[str, Any]]) -> Optional[MigratorError]:
    """Map one newMediaItemResults status to an error, or None on success."""
    if not status:
        return None
    code = status.get("code", 0) or 0
    message = status.get("message", "")
    if code == 0:
        return None
    if _mentions_invalid_token(message):
        return InvalidTransferTokenError(f"commit refused token: {message}")
    if code in _RATE_LIMIT_CODES:
        return RateLimitedError(f"commit quota exhausted: {message}", status_code=None)
    if code in _TRANSIENT_CODES:
        return TransientNetworkError(f"commit unavailable (code {code}): {message}")
    return ClientFaultError(f"commit rejected (code {code}): {message}")


def _read_chunk(path: Path, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


class RemoteStoreClient:
    """
    HTTP client for the two-call remote protocol.

    Implements IRemoteStore protocol.

    Usage:
        async with RemoteStoreClient() as remote:
            token = await remote.upload_bytes(session, path, credential, mime, name)
            results = await remote.commit([{"upload_token": token, "file_name": name}], credential)
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._api_url, timeout=self._timeout, transport=self._transport
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("RemoteStoreClient not initialized. Use 'async with' context.")
        return self._client

    async def _send(self, operation: str, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        try:
            response = await self._http().request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{operation} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{operation} connection error: {exc}") from exc
        classify_response(response, operation)
        return response

    # =========================================================================
    # Phase 1: bytes
    # =========================================================================

    async def upload_bytes(
        self,
        session: TransferSession,
        path: Path,
        credential: Credential,
        mime_type: str,
        filename: str,
    ) -> str:
        """Send the item's bytes and return the transfer token."""
        if session.is_resumable:
            token = await self._upload_resumable(session, Path(path), credential, mime_type, filename)
        else:
            token = await self._upload_raw(session, Path(path), credential, mime_type, filename)
        session.transfer_token = token
        return token

    async def _upload_raw(
        self,
        session: TransferSession,
        path: Path,
        credential: Credential,
        mime_type: str,
        filename: str,
    ) -> str:
        data = await asyncio.to_thread(path.read_bytes)
        response = await self._send(
            "upload",
            "POST",
            UPLOADS_ENDPOINT,
            session.timeout,
            content=data,
            headers={
                "Authorization": credential.authorization_header,
                "Content-Type": "application/octet-stream",
                "X-Goog-Upload-Content-Type": mime_type,
                "X-Goog-Upload-File-Name": filename,
                "X-Goog-Upload-Protocol": "raw",
            },
        )
        session.bytes_sent = len(data)
        return self._token_from(response)

    async def _upload_resumable(
        self,
        session: TransferSession,
        path: Path,
        credential: Credential,
        mime_type: str,
        filename: str,
    ) -> str:
        total = path.stat().st_size
        auth = {"Authorization": credential.authorization_header}

        if session.upload_url is None:
            response = await self._send(
                "upload",
                "POST",
                UPLOADS_ENDPOINT,
                session.timeout,
                headers={
                    **auth,
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Content-Type": mime_type,
                    "X-Goog-Upload-File-Name": filename,
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Raw-Size": str(total),
                },
            )
            upload_url = response.headers.get("X-Goog-Upload-URL")
            if not upload_url:
                raise TransientNetworkError("resumable start returned no upload URL")
            session.upload_url = upload_url
            session.bytes_sent = 0
            logger.debug(f"Resumable session opened for {filename} ({total} bytes)")
        else:
            session.bytes_sent = await self._query_offset(session, auth)

        while True:
            chunk = await asyncio.to_thread(_read_chunk, path, session.bytes_sent, session.chunk_size)
            is_last = session.bytes_sent + len(chunk) >= total
            response = await self._send(
                "upload",
                "POST",
                session.upload_url,
                session.timeout,
                content=chunk,
                headers={
                    **auth,
                    "X-Goog-Upload-Command": "upload, finalize" if is_last else "upload",
                    "X-Goog-Upload-Offset": str(session.bytes_sent),
                },
            )
            session.bytes_sent += len(chunk)
            if is_last:
                return self._token_from(response)

    async def _query_offset(self, session: TransferSession, auth: Dict[str, str]) -> int:
        """Ask the server how many bytes of an open session it holds."""
        response = await self._send(
            "upload",
            "POST",
            session.upload_url,
            session.timeout,
            headers={**auth, "X-Goog-Upload-Command": "query"},
        )
        received = response.headers.get("X-Goog-Upload-Size-Received", "0")
        try:
            return int(received)
        except ValueError:
            return 0

    @staticmethod
    def _token_from(response: httpx.Response) -> str:
        token = response.text.strip()
        if not token:
            raise TransientNetworkError("upload returned an empty transfer token")
        return token

    # =========================================================================
    # Phase 2: commit
    # =========================================================================

    async def commit(
        self,
        entries: Sequence[Dict[str, Optional[str]]],
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> List[CommitResult]:
        """
        Register uploaded bytes as media items.

        Args:
            entries: Dicts with ``upload_token``, ``file_name`` and optional ``description``
            credential: Bearer credential
            timeout: Request timeout (defaults to the client timeout)

        Returns:
            One CommitResult per entry, in entry order.
        """
        body = {
            "newMediaItems": [
                {
                    "description": entry.get("description") or "",
                    "simpleMediaItem": {
                        "uploadToken": entry["upload_token"],
                        "fileName": entry.get("file_name") or "",
                    },
                }
                for entry in entries
            ]
        }
        response = await self._send(
            "commit",
            "POST",
            BATCH_CREATE_ENDPOINT,
            timeout if timeout is not None else self._timeout,
            json=body,
            headers={"Authorization": credential.authorization_header},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientNetworkError("commit returned a non-JSON body") from exc

        by_token = {
            result.get("uploadToken"): result
            for result in payload.get("newMediaItemResults", [])
        }
        results = []
        for entry in entries:
            token = entry["upload_token"]
            result = by_token.get(token)
            if result is None:
                results.append(CommitResult(token, error=TransientNetworkError("commit returned no result for token")))
                continue
            error = classify_commit_status(result.get("status"))
            remote_id = (result.get("mediaItem") or {}).get("id")
            if error is None and not remote_id:
                error = TransientNetworkError("commit result carries no media item id")
            results.append(CommitResult(token, remote_id=remote_id if error is None else None, error=error))
        return results
