"""Client that hands a job to an edge node and reports the outcome."""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from edgedispatch.config import DEFAULT_EXECUTION_TIMEOUT
from edgedispatch.models import Failure, Job, Outcome, Success

logger = logging.getLogger(__name__)


class ExecutionClient(ABC):
    """Contract for running a job on an edge node.

    ``execute`` is bounded by ``timeout`` and never raises for job-level
    problems: unreachable nodes, error replies and timeouts all come back
    as :class:`Failure`.
    """

    @abstractmethod
    async def execute(
        self, job: Job, node_address: str, timeout: Optional[float] = None
    ) -> Outcome:
        pass

    async def close(self) -> None:
        pass


class HttpExecutionClient(ExecutionClient):
    """Runs jobs by POSTing ``{id, task, arguments}`` to ``<node>/execute``.

    The node answers ``{"success": true, "result": ...}`` or
    ``{"success": false, "error": "..."}``. Any other reply is a failure.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_EXECUTION_TIMEOUT,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize HTTP execution client.

        Args:
            timeout: Default bound on one execution in seconds.
            auth_token: Bearer token sent to nodes. Defaults to the
                EDGEDISPATCH_NODE_TOKEN environment variable.
            transport: Optional httpx transport (used by tests).
        """
        self.timeout = timeout
        self.auth_token = auth_token or os.getenv("EDGEDISPATCH_NODE_TOKEN")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def execute(
        self, job: Job, node_address: str, timeout: Optional[float] = None
    ) -> Outcome:
        timeout = timeout if timeout is not None else self.timeout
        endpoint = f"{node_address.rstrip('/')}/execute"

        try:
            response = await asyncio.wait_for(
                self._post(endpoint, job.to_payload(), timeout), timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"Job {job.id} timed out on {node_address} after {timeout}s")
            return Failure(f"execution timed out after {timeout}s")
        except httpx.HTTPError as e:
            logger.warning(f"Job {job.id} could not reach {node_address}: {e}")
            return Failure(f"node unreachable: {type(e).__name__}: {e}")

        return self._parse_response(response)

    async def _post(
        self, endpoint: str, payload: Dict[str, Any], timeout: float
    ) -> httpx.Response:
        client = await self._get_client()
        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        logger.debug(f"Submitting job {payload['id']} to {endpoint}")
        return await client.post(
            endpoint, json=payload, headers=headers, timeout=httpx.Timeout(timeout)
        )

    def _parse_response(self, response: httpx.Response) -> Outcome:
        """Map an edge node reply to an outcome."""
        try:
            body = response.json()
        except ValueError:
            return Failure(
                f"node returned non-JSON response ({response.status_code}): "
                f"{response.text[:500]}"
            )

        if not isinstance(body, dict) or not isinstance(body.get("success"), bool):
            return Failure(f"unexpected response format: {str(body)[:500]}")

        if response.status_code >= 400 or not body["success"]:
            error = body.get("error") or f"node returned HTTP {response.status_code}"
            return Failure(str(error))

        if "result" not in body:
            return Failure(f"unexpected response format: {str(body)[:500]}")

        return Success(body["result"])

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP session."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
