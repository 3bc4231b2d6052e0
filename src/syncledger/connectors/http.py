"""
HTTP connectors.

Provides httpx-based implementations of the collaborator protocols:
- Push delivery of CloudEvents payloads to subscriber sinks
- Paged origin enumeration from a JSON API
- Target writes as POST / PUT / DELETE against a JSON API
"""

from __future__ import annotations

import time
from typing import Any, AsyncIterator

import httpx

from syncledger.connectors.base import DeliveryResponse, TargetWriteResult
from syncledger.errors import OriginReadError, TargetWriteError
from syncledger.models import CrudAction, SourceDescriptor, TargetDescriptor


MAX_BODY_CHARS = 2000


def _response_body(response: httpx.Response) -> Any:
    """JSON body if there is one, otherwise (truncated) text."""
    try:
        return response.json()
    except ValueError:
        return response.text[:MAX_BODY_CHARS]


class _HttpConnector:
    """Lazy ``httpx.AsyncClient`` ownership shared by the HTTP connectors."""

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            timeout_seconds: Read timeout per request
            headers: Headers sent with every request
            transport: Optional transport (``httpx.MockTransport`` in tests)
        """
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                transport=self.transport,
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=self.timeout_seconds,
                    write=30.0,
                    pool=10.0,
                ),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "_HttpConnector":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class HttpPushTransport(_HttpConnector):
    """
    Delivers event payloads to push subscribers.

    Transport failures are returned as a response without status rather
    than raised, so the delivery engine can classify every attempt the
    same way.

    Example:
        async with HttpPushTransport(timeout_seconds=10) as transport:
            response = await transport.send("https://hooks.example.com/in", payload)
            if response.ok:
                ...
    """

    CONTENT_TYPE = "application/cloudevents+json"

    async def send(self, sink: str, payload: dict[str, Any]) -> DeliveryResponse:
        client = await self._get_client()
        start_time = time.time()

        try:
            response = await client.post(
                sink,
                json=payload,
                headers={"Content-Type": self.CONTENT_TYPE},
            )
        except httpx.TimeoutException as e:
            return DeliveryResponse(
                status=None,
                error=f"Timeout: {e.__class__.__name__}",
                duration_ms=(time.time() - start_time) * 1000,
            )
        except httpx.HTTPError as e:
            return DeliveryResponse(
                status=None,
                error=f"Connection error: {e}",
                duration_ms=(time.time() - start_time) * 1000,
            )

        return DeliveryResponse(
            status=response.status_code,
            body=_response_body(response),
            duration_ms=(time.time() - start_time) * 1000,
        )


class HttpOrigin(_HttpConnector):
    """
    Enumerates origin records from a JSON API.

    The location is fetched with GET. A JSON list is a single page; a JSON
    object carries its records under ``options["items_key"]`` (default
    ``"items"``) and the URL of the next page under
    ``options["next_key"]`` (default ``"next"``).
    """

    async def enumerate(self, descriptor: SourceDescriptor) -> AsyncIterator[dict[str, Any]]:
        client = await self._get_client()
        items_key = descriptor.options.get("items_key", "items")
        next_key = descriptor.options.get("next_key", "next")
        params = descriptor.options.get("params") or None
        url: str | None = descriptor.location

        while url:
            try:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                raise OriginReadError(
                    f"Origin returned {e.response.status_code} for {url}",
                    code="origin_http_error",
                ) from e
            except (httpx.HTTPError, ValueError) as e:
                raise OriginReadError(f"Failed to read origin {url}: {e}") from e

            if isinstance(data, list):
                records, url = data, None
            elif isinstance(data, dict):
                records = data.get(items_key, [])
                url = data.get(next_key)
                params = None
            else:
                raise OriginReadError(f"Unexpected origin payload from {url}")

            for record in records:
                if isinstance(record, dict):
                    yield record


class HttpTarget(_HttpConnector):
    """
    Writes mapped records to a JSON API.

    CREATE posts to the location, UPDATE puts to ``<location>/<target_id>``
    and DELETE deletes it. The target id is read from the response body
    under ``options["id_field"]`` (default ``"id"``).
    """

    def _item_url(self, descriptor: TargetDescriptor, target_id: str) -> str:
        return f"{descriptor.location.rstrip('/')}/{target_id}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TargetWriteError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400 and response.status_code != 404:
            raise TargetWriteError(
                f"{method} {url} returned {response.status_code}",
                status=response.status_code,
                response=_response_body(response),
            )
        return response

    async def write(
        self,
        descriptor: TargetDescriptor,
        record: dict[str, Any],
        action: CrudAction,
        target_id: str | None = None,
    ) -> TargetWriteResult:
        id_field = descriptor.options.get("id_field", "id")

        if action == CrudAction.UPDATE and target_id:
            url = self._item_url(descriptor, target_id)
            response = await self._send("PUT", url, json=record)
        else:
            url = descriptor.location
            response = await self._send("POST", url, json=record)

        if response.status_code == 404:
            raise TargetWriteError(f"Target object not found: {url}", status=404)

        body = _response_body(response)
        stored = body if isinstance(body, dict) else record
        new_id = stored.get(id_field, target_id)
        return TargetWriteResult(
            target_id=str(new_id) if new_id is not None else None,
            record=stored,
            status=response.status_code,
        )

    async def read(self, descriptor: TargetDescriptor, target_id: str) -> dict[str, Any] | None:
        response = await self._send("GET", self._item_url(descriptor, target_id))
        if response.status_code == 404:
            return None
        body = _response_body(response)
        return body if isinstance(body, dict) else None

    async def delete(self, descriptor: TargetDescriptor, target_id: str) -> None:
        """Delete the target object. A missing object counts as deleted."""
        await self._send("DELETE", self._item_url(descriptor, target_id))
