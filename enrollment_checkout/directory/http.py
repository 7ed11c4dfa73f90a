"""Enrollment directory backed by the enrollment service's REST API."""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from enrollment_checkout.directory.base import EnrollmentDirectory
from enrollment_checkout.domain.models import Enrollment

logger = structlog.get_logger(__name__)


class HttpEnrollmentDirectory(EnrollmentDirectory):
    """
    Talks to the enrollment service over HTTP.

    Endpoints used:
        GET  /enrollments/{id}
        GET  /enrollments?user_id=...
        POST /enrollments/{id}/activate   {"order_id": ...}

    Transport errors and non-2xx answers (other than 404 on lookup) raise
    httpx errors to the caller.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        response = await self._client.get(f"/enrollments/{enrollment_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Enrollment.from_dict(response.json())

    async def list_enrollments(self, user_id: str) -> List[Enrollment]:
        response = await self._client.get("/enrollments", params={"user_id": user_id})
        response.raise_for_status()
        payload: Dict[str, Any] = response.json()
        return [Enrollment.from_dict(item) for item in payload.get("enrollments", [])]

    async def activate(self, enrollment_id: str, order_id: str) -> None:
        response = await self._client.post(
            f"/enrollments/{enrollment_id}/activate", json={"order_id": order_id}
        )
        response.raise_for_status()
        logger.info("enrollment_activation_sent", enrollment_id=enrollment_id, order_id=order_id)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
