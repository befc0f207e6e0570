"""
Async upload-post API client used to publish listing media.

Uses ``httpx`` to call the upload-post service, which fans a single
upload out to the connected social account of one platform. The
dispatcher calls :meth:`UploadPostClient.publish` once per platform.

Failure classification:
    - Transport errors are retried with exponential backoff
      (``with_retry``); if retries run out they surface as
      ``TransientPublishError``.
    - HTTP 429 and 5xx -> ``TransientPublishError`` (retried later by the
      dispatcher with its own bounded backoff).
    - Other 4xx, or a platform-level rejection in a 2xx body ->
      ``PermanentPublishError``.
"""

import logging
import os
from typing import Any, Dict, Optional

import httpx

from listing_scheduler.exceptions import (
    ConfigurationError,
    PermanentPublishError,
    RetryExhaustedError,
    TransientPublishError,
)
from listing_scheduler.scheduling.models import PublishRequest, PublishResult
from listing_scheduler.utils import with_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.upload-post.com/api"


class UploadPostClient:
    """Async client for the upload-post publishing API.

    Args:
        api_key: API key. Falls back to ``UPLOAD_POST_API_KEY``.
        base_url: API root. Falls back to ``UPLOAD_POST_BASE_URL``.
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests use
            ``httpx.MockTransport``).

    Usage::

        client = UploadPostClient()
        result = await client.publish(request)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key: str = api_key or os.environ.get("UPLOAD_POST_API_KEY", "")
        if not self.api_key:
            raise ConfigurationError("UPLOAD_POST_API_KEY must be set to publish posts")
        self.base_url: str = (
            base_url or os.environ.get("UPLOAD_POST_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        """Build authorization headers for API requests."""
        return {"Authorization": f"Apikey {self.api_key}"}

    @with_retry(
        max_attempts=3,
        retryable_exceptions=(httpx.TransportError,),
        operation_name="upload_post.post",
    )
    async def _post(self, path: str, data: Dict[str, Any]) -> httpx.Response:
        """POST form data, retrying transport-level failures."""
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            return await client.post(
                f"{self.base_url}{path}",
                headers=self._auth_headers(),
                data=data,
            )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, request: PublishRequest) -> PublishResult:
        """Publish one media item to one platform.

        Args:
            request: What to publish and where.

        Returns:
            The platform outcome.

        Raises:
            TransientPublishError: Timeouts, rate limiting, 5xx.
            PermanentPublishError: Rejected content, invalid media,
                revoked platform authorization.
        """
        platform = request.platform.value
        path = "/upload" if request.is_video else "/upload_photos"
        media_field = "video" if request.is_video else "photos[]"
        data = {
            "user": request.profile or request.organization_id,
            "title": request.caption,
            "platform[]": platform,
            media_field: request.media_url,
        }

        try:
            response = await self._post(path, data)
        except RetryExhaustedError as exc:
            raise TransientPublishError(
                f"upload-post unreachable: {exc.last_error}", platform=platform
            ) from exc

        body = self._json(response)
        request_id = body.get("request_id")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientPublishError(
                f"upload-post returned {response.status_code}: {self._error_text(body, response)}",
                platform=platform,
                status_code=response.status_code,
                request_id=request_id,
            )
        if response.status_code >= 400:
            raise PermanentPublishError(
                f"upload-post rejected request ({response.status_code}): "
                f"{self._error_text(body, response)}",
                platform=platform,
                status_code=response.status_code,
                request_id=request_id,
            )

        platform_result = (body.get("results") or {}).get(platform, {})
        if body.get("success") is False or platform_result.get("success") is False:
            raise PermanentPublishError(
                f"{platform} rejected post: "
                f"{platform_result.get('error') or self._error_text(body, response)}",
                platform=platform,
                status_code=response.status_code,
                request_id=request_id,
            )

        logger.info(
            "[DISPATCH] upload-post %s ok (entry=%s, request_id=%s)",
            platform,
            request.entry_id,
            request_id,
        )
        return PublishResult(
            platform=request.platform,
            request_id=request_id,
            platform_post_id=platform_result.get("post_id"),
            post_url=platform_result.get("url"),
            raw=body,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _error_text(body: Dict[str, Any], response: httpx.Response) -> str:
        return str(body.get("error") or body.get("message") or response.text[:200])


__all__ = [
    "DEFAULT_BASE_URL",
    "PublishRequest",
    "PublishResult",
    "UploadPostClient",
]
