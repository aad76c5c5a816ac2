"""Async JSON-RPC 2.0 client with retry on transient failures."""

import asyncio
import itertools
from typing import Any, Optional

import httpx

from common.exceptions import RpcError, TransientError
from common.logging_config import get_logger
from common.rate_limiter import AsyncTokenBucket

logger = get_logger(__name__)

RETRYABLE_STATUS = 429


class JsonRpcClient:
    """JSON-RPC client for ledger nodes with retry logic and error mapping."""

    def __init__(
        self,
        url: str,
        timeout: float = 30,
        max_retries: int = 3,
        backoff_multiplier: float = 2,
        base_delay: float = 0.5,
        limiter: Optional[AsyncTokenBucket] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize JSON-RPC client.

        Args:
            url: Endpoint URL
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt for transient failures
            backoff_multiplier: Exponential backoff base
            base_delay: Delay before the first retry in seconds
            limiter: Optional request throttle (public endpoints)
            client: Pre-built httpx client (tests inject a MockTransport here)
        """
        self.url = url
        self.max_retries = max_retries
        self.backoff_multiplier = backoff_multiplier
        self.base_delay = base_delay
        self.limiter = limiter
        self._owns_client = client is None
        self.session = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.session.aclose()

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _delay(self, attempt: int) -> float:
        return self.base_delay * (self.backoff_multiplier ** attempt)

    async def call(self, method: str, params: Any = None) -> Any:
        """
        Invoke a JSON-RPC method.

        Args:
            method: Method name
            params: Positional list or named dict (default empty list)

        Returns:
            The `result` member of the response

        Raises:
            TransientError: If retries are exhausted on network errors, 5xx or 429
            RpcError: If the endpoint returns an error object or a client error
        """
        request_id = next(self._ids)
        body = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params if params is not None else [],
        }
        last_error = ""

        for attempt in range(self.max_retries + 1):
            if self.limiter is not None:
                await self.limiter.acquire()
            try:
                response = await self.session.post(self.url, json=body)
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < self.max_retries:
                    delay = self._delay(attempt)
                    logger.warning(
                        f"Network error (attempt {attempt + 1}/{self.max_retries + 1}): "
                        f"{method} error={type(e).__name__}, retrying in {delay}s [id={request_id}]"
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code >= 500 or response.status_code == RETRYABLE_STATUS:
                last_error = f"HTTP {response.status_code}"
                if attempt < self.max_retries:
                    delay = self._delay(attempt)
                    logger.warning(
                        f"Server error (attempt {attempt + 1}/{self.max_retries + 1}): "
                        f"{method} status={response.status_code}, retrying in {delay}s [id={request_id}]"
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code >= 400:
                logger.warning(f"Client error: {method} status={response.status_code} [id={request_id}]")
                raise RpcError(method, f"HTTP {response.status_code}: {response.text[:200]}")

            try:
                payload = response.json()
            except ValueError as e:
                raise RpcError(method, f"invalid JSON response: {e}") from e

            error = payload.get("error") if isinstance(payload, dict) else None
            if error:
                if isinstance(error, dict):
                    raise RpcError(method, error.get("message", str(error)), error.get("code"))
                raise RpcError(method, str(error))

            logger.debug(f"RPC {method} ok [id={request_id}]")
            return payload.get("result") if isinstance(payload, dict) else payload

        logger.error(f"RPC {method} failed after {self.max_retries + 1} attempts: {last_error} [id={request_id}]")
        raise TransientError(f"{method} failed after {self.max_retries + 1} attempts: {last_error}")
