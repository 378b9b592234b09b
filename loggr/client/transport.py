"""HTTP delivery of error records to the ingestion endpoint."""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

import httpx

logger = logging.getLogger(__name__)

LOG_ERROR_ACTION = "log_error"
DEFAULT_TIMEOUT = 10.0
EXIT_TIMEOUT = 2.0


class Transport:
    def __init__(self, ajax_url: str, nonce: str,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 sync_client: Optional[httpx.Client] = None,
                 exit_timeout: float = EXIT_TIMEOUT):
        self.ajax_url = ajax_url
        self.nonce = nonce
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self._sync_client = sync_client
        self.exit_timeout = exit_timeout
        self._background: Set[asyncio.Task] = set()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def is_ingestion_url(self, url: Any) -> bool:
        """Requests to our own endpoint are never captured."""
        return str(url).split("?")[0] == self.ajax_url.split("?")[0]

    def _form(self, records: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        payloads = [json.dumps(record, default=str) for record in records]
        return {
            "action": LOG_ERROR_ACTION,
            "nonce": self.nonce,
            "error_data": payloads[0] if len(payloads) == 1 else payloads,
        }

    async def send(self, record: Dict[str, Any]) -> bool:
        """POST one record. True when the server accepted (or ignored) it."""
        response = await self.client.post(self.ajax_url, data=self._form([record]))
        try:
            body = response.json()
        except ValueError:
            logger.debug(f"Non-JSON response from ingestion endpoint: {response.status_code}")
            return False
        if not body.get("success"):
            logger.debug(f"Server rejected error record: {body.get('message')}")
            return False
        return True

    async def send_batch(self, records: List[Dict[str, Any]]) -> None:
        if not records:
            return
        await self.client.post(self.ajax_url, data=self._form(records))

    def send_batch_nowait(self, records: List[Dict[str, Any]]) -> Optional[asyncio.Task]:
        """Fire-and-forget batch POST; the response is never awaited by the caller.

        With no running event loop (interpreter exit, a crashed main thread)
        the batch is posted synchronously with a short timeout instead.
        """
        if not records:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.send_batch_sync(records)
            return None
        task = loop.create_task(self._send_batch_quietly(list(records)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def send_batch_sync(self, records: List[Dict[str, Any]]) -> bool:
        """Blocking best-effort POST of a batch. True when the server answered."""
        if not records:
            return False
        client = self._sync_client or httpx.Client(timeout=self.exit_timeout)
        try:
            client.post(self.ajax_url, data=self._form(records))
            return True
        except httpx.HTTPError as e:
            logger.debug(f"Exit batch delivery failed: {str(e)}")
            return False
        finally:
            if client is not self._sync_client:
                client.close()

    async def _send_batch_quietly(self, records: List[Dict[str, Any]]) -> None:
        try:
            await self.send_batch(records)
        except Exception as e:
            logger.debug(f"Unload batch delivery failed: {str(e)}")

    async def aclose(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


async def fetch_client_config(base_url: str, page_url: str = "",
                              client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """GET /api/v1/client-config and return its data block."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
    try:
        response = await client.get(f"{base_url.rstrip('/')}/api/v1/client-config",
                                    params={"page_url": page_url} if page_url else None)
        response.raise_for_status()
        return response.json()["data"]
    finally:
        if owns_client:
            await client.aclose()
