from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from clipforge.settings import get_settings

logger = logging.getLogger(__name__)

REPLICATE_PREDICTIONS_URL = "https://api.replicate.com/v1/predictions"
REPLICATE_PREDICTION_URL = "https://api.replicate.com/v1/predictions/{prediction_id}"

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


class ReplicateError(RuntimeError):
    def __init__(self, message: str, *, prediction_id: str | None = None, status: str | None = None):
        super().__init__(message)
        self.prediction_id = prediction_id
        self.status = status


def _version_hash(version: str) -> str:
    """Replicate wants the bare hash; accept owner/model:hash too."""
    return version.split(":", 1)[1] if ":" in version else version


async def run_prediction(
    version: str,
    payload: dict[str, Any],
    *,
    timeout_s: int = 900,
    poll_interval_s: float = 2.0,
    client: httpx.AsyncClient | None = None,
) -> Any:
    """Start a prediction, wait for it to finish, return its output."""
    settings = get_settings()
    if not settings.replicate_api_token:
        raise ReplicateError("REPLICATE_API_TOKEN missing")

    headers = {
        "Authorization": f"Bearer {settings.replicate_api_token}",
        "Content-Type": "application/json",
    }
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=60)
    try:
        try:
            start = await client.post(
                REPLICATE_PREDICTIONS_URL,
                headers=headers,
                json={"version": _version_hash(version), "input": payload},
            )
        except httpx.HTTPError as exc:
            raise ReplicateError(f"prediction start failed: {exc}") from exc
        if start.status_code >= 400:
            raise ReplicateError(f"prediction start failed: HTTP {start.status_code} {start.text[:300]}")

        data = start.json()
        prediction_id = data.get("id")
        if not prediction_id:
            raise ReplicateError(f"prediction id missing: {start.text[:300]}")
        logger.info(f"[replicate] prediction {prediction_id} started ({version.split(':')[0]})")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while data.get("status") not in TERMINAL_STATUSES:
            if loop.time() > deadline:
                raise ReplicateError(
                    f"prediction timed out after {timeout_s}s",
                    prediction_id=prediction_id,
                    status=data.get("status"),
                )
            await asyncio.sleep(poll_interval_s)
            try:
                resp = await client.get(REPLICATE_PREDICTION_URL.format(prediction_id=prediction_id), headers=headers)
            except httpx.HTTPError as exc:
                raise ReplicateError(f"prediction status failed: {exc}", prediction_id=prediction_id) from exc
            if resp.status_code >= 400:
                raise ReplicateError(
                    f"prediction status failed: HTTP {resp.status_code}", prediction_id=prediction_id
                )
            data = resp.json()

        if data["status"] != "succeeded":
            raise ReplicateError(
                f"prediction {data['status']}: {data.get('error') or 'no error message'}",
                prediction_id=prediction_id,
                status=data["status"],
            )
        return data.get("output")
    finally:
        if owns_client:
            await client.aclose()
