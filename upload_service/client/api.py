from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

from upload_service.errors import (
    Conflict,
    Incomplete,
    NotFound,
    ProtocolError,
    StorageIOError,
    TransientError,
    UploadError,
    ValidationError,
)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

T = TypeVar("T")


@dataclass(frozen=True)
class HandshakeReply:
    session_id: str
    status: str
    chunk_size: int
    total_chunks: int
    received_indices: list[int]


@dataclass(frozen=True)
class StatusReply:
    session_id: str
    status: str
    received_indices: list[int]
    final_hash: str | None = None
    content_listing: list[str] | None = None


@dataclass(frozen=True)
class FinalizeReply:
    status: str
    hash: str
    content_listing: list[str] = field(default_factory=list)


def _error_from_response(response: httpx.Response) -> UploadError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = str(body.get("detail") or response.reason_phrase or f"HTTP {response.status_code}")
    error_code = body.get("error_code")

    if error_code == "incomplete":
        return Incomplete(int(body.get("pending_count") or 0), detail)
    if error_code == "storage_error":
        return StorageIOError(detail)
    if response.status_code in RETRYABLE_STATUS_CODES:
        return TransientError(f"{response.status_code}: {detail}")
    if response.status_code == 404:
        return NotFound(detail)
    if response.status_code == 409:
        return Conflict(detail)
    if 400 <= response.status_code < 500:
        return ValidationError(detail)
    return TransientError(f"{response.status_code}: {detail}")


def _parse_reply(response: httpx.Response, build: Callable[[dict], T]) -> T:
    try:
        body = response.json()
        if not isinstance(body, dict):
            raise TypeError(f"expected a JSON object, got {type(body).__name__}")
        return build(body)
    except (ValueError, KeyError, TypeError) as exc:
        raise ProtocolError(
            f"unexpected {response.status_code} response from {response.request.url.path}: {exc!r}"
        ) from exc


class UploadApiClient:
    """Async client for the upload protocol.

    Transport failures, timeouts and retryable status codes surface as
    ``TransientError``; protocol errors keep their server-side type. A success
    status with a body that does not parse raises ``ProtocolError``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "UploadApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(f"timeout calling {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"network error calling {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"request to {url} failed: {exc}") from exc
        if response.is_error:
            raise _error_from_response(response)
        return response

    async def handshake(
        self,
        session_id: str,
        filename: str,
        total_size: int,
        total_chunks: int,
        chunk_size: int | None = None,
    ) -> HandshakeReply:
        payload = {
            "session_id": session_id,
            "filename": filename,
            "total_size": total_size,
            "total_chunks": total_chunks,
        }
        if chunk_size is not None:
            payload["chunk_size"] = chunk_size
        response = await self._request("POST", "/v1/uploads/handshake", json=payload)
        return _parse_reply(
            response,
            lambda body: HandshakeReply(
                session_id=body["session_id"],
                status=body["status"],
                chunk_size=int(body["chunk_size"]),
                total_chunks=int(body["total_chunks"]),
                received_indices=[int(idx) for idx in body.get("received_indices") or []],
            ),
        )

    async def upload_chunk(self, session_id: str, index: int, data: bytes) -> int:
        response = await self._request(
            "PUT",
            f"/v1/uploads/{session_id}/chunks/{index}",
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )

        def _confirmed(body: dict) -> int:
            if not body.get("success"):
                raise TransientError(f"server did not confirm chunk {index}")
            return int(body["index"])

        return _parse_reply(response, _confirmed)

    async def status(self, session_id: str) -> StatusReply:
        response = await self._request("GET", f"/v1/uploads/{session_id}")
        return _parse_reply(
            response,
            lambda body: StatusReply(
                session_id=body["session_id"],
                status=body["status"],
                received_indices=[int(idx) for idx in body.get("received_indices") or []],
                final_hash=body.get("final_hash"),
                content_listing=body.get("content_listing"),
            ),
        )

    async def finalize(self, session_id: str) -> FinalizeReply:
        response = await self._request("POST", f"/v1/uploads/{session_id}/finalize")
        return _parse_reply(
            response,
            lambda body: FinalizeReply(
                status=body["status"],
                hash=body["hash"],
                content_listing=list(body.get("content_listing") or []),
            ),
        )
