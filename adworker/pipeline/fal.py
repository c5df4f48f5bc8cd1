"""
fal.ai queue REST client.

fal.ai queue protocol:
  POST /{endpoint}                                 → { request_id, status_url, response_url }
  GET  /{endpoint}/requests/{request_id}/status    → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{endpoint}/requests/{request_id}           → result payload

Submit is retried on 429 / 5xx with exponential backoff. Stage-level retry
lives in the executor; this layer only smooths over provider throttling.
"""

import os
import time
import random
import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

FAL_KEY = os.environ.get("FAL_KEY", "")
FAL_API_BASE = "https://queue.fal.run"

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

POLL_INTERVAL = 3      # seconds
POLL_TIMEOUT = 600     # video models can take several minutes


class FalError(Exception):
    """fal.ai reported a failed request or never finished."""


class FalClient:
    def __init__(
        self,
        api_key: str = FAL_KEY,
        base_url: str = FAL_API_BASE,
        poll_interval: float = POLL_INTERVAL,
        poll_timeout: float = POLL_TIMEOUT,
        base_delay: float = BASE_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.base_delay = base_delay
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise FalError("FAL_KEY not set")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _submit(self, client: httpx.AsyncClient, endpoint: str, input_data: dict) -> httpx.Response:
        url = f"{self.base_url}/{endpoint}"
        for attempt in range(MAX_RETRIES + 1):
            resp = await client.post(url, json=input_data, headers=self._headers())
            if resp.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
                delay = self.base_delay * (2 ** attempt)
                if delay:
                    delay += random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"[fal] {resp.status_code} on submit attempt {attempt + 1}/{MAX_RETRIES + 1} "
                    f"to {endpoint}, retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue
            resp.raise_for_status()
            return resp
        raise FalError(f"Submit to {endpoint} failed after {MAX_RETRIES + 1} attempts")

    async def subscribe(self, endpoint: str, input_data: dict) -> dict:
        """Submit a request to the fal.ai queue and poll until it completes."""
        async with httpx.AsyncClient(timeout=60, transport=self._transport) as client:
            logger.info(f"[fal] Submitting to {endpoint}...")
            submit_data = (await self._submit(client, endpoint, input_data)).json()

            request_id = submit_data.get("request_id")
            if not request_id:
                # Some endpoints answer synchronously
                if submit_data.get("images") or submit_data.get("image") or submit_data.get("video"):
                    return submit_data
                raise FalError(f"No request_id in fal.ai response: {submit_data}")

            status_url = submit_data.get("status_url") or f"{self.base_url}/{endpoint}/requests/{request_id}/status"
            result_url = submit_data.get("response_url") or f"{self.base_url}/{endpoint}/requests/{request_id}"
            logger.info(f"[fal] Queued {endpoint}: request_id={request_id}")

            started = time.monotonic()
            while time.monotonic() - started < self.poll_timeout:
                await asyncio.sleep(self.poll_interval)

                status_resp = await client.get(status_url, headers=self._headers())
                if status_resp.status_code in RETRYABLE_STATUS_CODES:
                    logger.warning(f"[fal] Status poll {status_resp.status_code}, retrying...")
                    continue
                status_resp.raise_for_status()
                status_data = status_resp.json()
                status = status_data.get("status", "")

                if status == "COMPLETED":
                    if status_data.get("error"):
                        raise FalError(f"{endpoint} failed: {status_data['error']}")
                    result_resp = await client.get(result_url, headers=self._headers())
                    result_resp.raise_for_status()
                    logger.info(f"[fal] Completed {endpoint}: request_id={request_id}")
                    return result_resp.json()

                if status in ("FAILED", "ERROR"):
                    raise FalError(f"{endpoint} failed: {status_data.get('error', 'Unknown error')}")

                logger.debug(f"[fal] {endpoint} status: {status}")

        raise FalError(f"{endpoint} timed out after {self.poll_timeout}s (request_id={request_id})")
