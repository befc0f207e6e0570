"""Tests for listing_scheduler.tools.upload_post using httpx.MockTransport."""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs

import httpx
import pytest

from listing_scheduler.exceptions import (
    ConfigurationError,
    PermanentPublishError,
    TransientPublishError,
)
from listing_scheduler.scheduling.models import Platform, PublishRequest
from listing_scheduler.tools.upload_post import DEFAULT_BASE_URL, UploadPostClient


def make_request(**kwargs):
    defaults = dict(
        entry_id="e1",
        listing_id="listing-1",
        organization_id="org-1",
        platform=Platform.INSTAGRAM,
        media_url="https://cdn.example.com/listing-1-9x16.mp4",
        caption="NEW | 3 Bed Semi-Detached | 12 Main Street",
    )
    defaults.update(kwargs)
    return PublishRequest(**defaults)


def client_for(handler):
    return UploadPostClient(api_key="test-key", transport=httpx.MockTransport(handler))


# ===========================================================================
# Configuration
# ===========================================================================


class TestConfiguration:
    def test_missing_api_key_raises(self):
        with pytest.raises(ConfigurationError, match="UPLOAD_POST_API_KEY"):
            UploadPostClient()

    def test_env_key_and_default_url(self, monkeypatch):
        monkeypatch.setenv("UPLOAD_POST_API_KEY", "env-key")
        client = UploadPostClient()
        assert client.api_key == "env-key"
        assert client.base_url == DEFAULT_BASE_URL

    def test_base_url_trailing_slash_stripped(self):
        client = UploadPostClient(api_key="k", base_url="https://upload.example.com/api/")
        assert client.base_url == "https://upload.example.com/api"


# ===========================================================================
# Publishing
# ===========================================================================


class TestPublish:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "success": True,
                "request_id": "req-42",
                "results": {"instagram": {"success": True, "post_id": "ig-1", "url": "https://instagram.com/p/ig-1"}},
            })

        result = await client_for(handler).publish(make_request(profile="acme"))

        assert result.platform is Platform.INSTAGRAM
        assert result.request_id == "req-42"
        assert result.platform_post_id == "ig-1"
        assert result.post_url == "https://instagram.com/p/ig-1"
        assert seen["url"] == f"{DEFAULT_BASE_URL}/upload"
        assert seen["auth"] == "Apikey test-key"
        assert seen["form"]["platform[]"] == ["instagram"]
        assert seen["form"]["user"] == ["acme"]
        assert seen["form"]["video"] == ["https://cdn.example.com/listing-1-9x16.mp4"]

    @pytest.mark.asyncio
    async def test_photo_uses_photo_endpoint(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"success": True})

        await client_for(handler).publish(
            make_request(is_video=False, media_url="https://cdn.example.com/hero.jpg")
        )
        assert seen["path"].endswith("/upload_photos")
        assert seen["form"]["photos[]"] == ["https://cdn.example.com/hero.jpg"]
        assert seen["form"]["user"] == ["org-1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status):
        def handler(request):
            return httpx.Response(status, json={"error": "busy", "request_id": "req-9"})

        with pytest.raises(TransientPublishError) as exc_info:
            await client_for(handler).publish(make_request())
        assert exc_info.value.status_code == status
        assert exc_info.value.request_id == "req-9"
        assert exc_info.value.platform == "instagram"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404])
    async def test_client_errors_are_permanent(self, status):
        def handler(request):
            return httpx.Response(status, json={"message": "bad media"})

        with pytest.raises(PermanentPublishError, match="bad media"):
            await client_for(handler).publish(make_request())

    @pytest.mark.asyncio
    async def test_platform_rejection_in_body_is_permanent(self):
        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "results": {"instagram": {"success": False, "error": "Video too long"}},
            })

        with pytest.raises(PermanentPublishError, match="Video too long"):
            await client_for(handler).publish(make_request())

    @pytest.mark.asyncio
    async def test_success_false_is_permanent(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "Account disconnected"})

        with pytest.raises(PermanentPublishError, match="Account disconnected"):
            await client_for(handler).publish(make_request())

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        with pytest.raises(TransientPublishError, match="Bad Gateway"):
            await client_for(handler).publish(make_request())

    @pytest.mark.asyncio
    async def test_transport_errors_retry_then_transient(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        with patch("listing_scheduler.utils.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransientPublishError, match="unreachable"):
                await client_for(handler).publish(make_request())
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_transport_error_recovers(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"success": True, "request_id": "req-2"})

        with patch("listing_scheduler.utils.asyncio.sleep", new_callable=AsyncMock):
            result = await client_for(handler).publish(make_request())
        assert result.request_id == "req-2"
