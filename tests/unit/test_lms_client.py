"""Tests for the paginated, rate-limited LMS client."""
import httpx
import pytest

from conftest import BASE_URL, person
from lmssync.errors import ConfigurationError, LmsApiError, RateLimitedError
from lmssync.lms.client import LmsClient


@pytest.fixture
def people(fake_lms):
    fake_lms.collections["/v2/people"] = [person(f"u{i:03d}") for i in range(237)]
    return fake_lms


class TestConstruction:
    def test_missing_api_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            LmsClient(api_key="")

    def test_from_settings(self, settings):
        client = LmsClient.from_settings(settings)
        assert client.page_size == settings.lms_page_size
        assert client.max_pages == settings.lms_max_pages


class TestPagination:
    @pytest.mark.asyncio
    async def test_follows_next_links_until_exhausted(self, people, lms_client, sleeps):
        result = await lms_client.fetch_all("/v2/people")

        assert len(result.records) == 237
        assert result.pages == 3
        assert result.complete
        assert len(people.requests) == 3
        # Delay between pages, not before the first
        assert sleeps == [0.125, 0.125]

    @pytest.mark.asyncio
    async def test_first_request_carries_page_size_and_key(self, people, lms_client):
        await lms_client.fetch_all("/v2/people")
        first = people.requests[0]
        assert first.url.params["limit"] == "100"
        assert first.headers["X-Api-Key"] == "test-key"

    @pytest.mark.asyncio
    async def test_next_link_followed_verbatim(self, people, lms_client):
        await lms_client.fetch_all("/v2/people", {"filter[updated_at][gteq]": "2025-01-01T00:00:00Z"})
        second = people.requests[1]
        assert second.url.params["page"] == "2"
        assert second.url.params["filter[updated_at][gteq]"] == "2025-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_records_kept_in_source_order(self, people, lms_client):
        result = await lms_client.fetch_all("/v2/people")
        ids = [r["id"] for r in result.records]
        assert ids == sorted(ids)

    @pytest.mark.asyncio
    async def test_empty_collection(self, fake_lms, lms_client):
        fake_lms.collections["/v2/courses"] = []
        result = await lms_client.fetch_all("/v2/courses")
        assert result.records == []
        assert result.pages == 1
        assert result.complete

    @pytest.mark.asyncio
    async def test_page_ceiling_stops_runaway_pagination(self, people):
        client = LmsClient(
            api_key="k", base_url=BASE_URL, max_pages=2,
            transport=httpx.MockTransport(people.handler), sleep=_no_sleep,
        )
        result = await client.fetch_all("/v2/people")

        assert len(result.records) == 200
        assert result.truncated
        assert not result.partial
        assert not result.complete
        assert len(people.requests) == 2


async def _no_sleep(seconds):
    return None


class TestRetries:
    @pytest.mark.asyncio
    async def test_429_is_retried_once_after_backoff(self, people, lms_client, sleeps):
        people.fail("/v2/people", 2, 429)

        result = await lms_client.fetch_all("/v2/people")

        assert len(result.records) == 237
        assert result.complete
        assert len(people.requests) == 4
        assert 10.0 in sleeps

    @pytest.mark.asyncio
    async def test_second_429_gives_up_with_partial_result(self, people, lms_client):
        people.fail("/v2/people", 2, 429, 429)

        result = await lms_client.fetch_all("/v2/people")

        assert len(result.records) == 100
        assert result.partial
        assert isinstance(result.error, RateLimitedError)
        assert result.error.status_code == 429

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self, people, lms_client):
        people.fail("/v2/people", 2, 500)

        result = await lms_client.fetch_all("/v2/people")

        assert len(result.records) == 100
        assert result.partial
        assert result.error.status_code == 500
        assert len(people.requests) == 2

    @pytest.mark.asyncio
    async def test_iter_pages_raises_after_yielding_earlier_pages(self, people, lms_client):
        people.fail("/v2/people", 3, 503)
        seen = []

        with pytest.raises(LmsApiError) as excinfo:
            async for page in lms_client.iter_pages("/v2/people"):
                seen.append(page.number)

        assert seen == [1, 2]
        assert "unavailable" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_timeout_is_retried_once(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"data": [person("u1")], "links": {}})

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        client = LmsClient(
            api_key="k", base_url=BASE_URL,
            transport=httpx.MockTransport(handler), sleep=fake_sleep,
        )
        result = await client.fetch_all("/v2/people")

        assert len(result.records) == 1
        assert len(calls) == 2
        assert sleeps == [10.0]

    @pytest.mark.asyncio
    async def test_repeated_timeout_is_fatal(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = LmsClient(
            api_key="k", base_url=BASE_URL,
            transport=httpx.MockTransport(handler), sleep=_no_sleep,
        )
        with pytest.raises(LmsApiError) as excinfo:
            await client.get("/v2/people")
        assert excinfo.value.status_code == 0


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy_after_success(self, people, lms_client):
        await lms_client.fetch_all("/v2/people")
        health = lms_client.health()
        assert health["status"] == "healthy"
        assert health["lastSuccessAt"] is not None

    @pytest.mark.asyncio
    async def test_degrades_then_turns_unhealthy(self, fake_lms, lms_client):
        await lms_client.fetch_all("/v2/missing")
        assert lms_client.health()["status"] == "degraded"

        for _ in range(4):
            await lms_client.fetch_all("/v2/missing")
        assert lms_client.health()["status"] == "unhealthy"
        assert not lms_client.is_healthy

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self, people, lms_client):
        for _ in range(5):
            await lms_client.fetch_all("/v2/missing")
        await lms_client.fetch_all("/v2/people")
        assert lms_client.consecutive_errors == 0


class TestSingleRequest:
    @pytest.mark.asyncio
    async def test_404_raises_with_status(self):
        client = LmsClient(
            api_key="k", base_url=BASE_URL,
            transport=httpx.MockTransport(lambda r: httpx.Response(404)),
        )
        with pytest.raises(LmsApiError) as excinfo:
            await client.get("/v2/groups/gone")
        assert excinfo.value.status_code == 404
        assert not excinfo.value.retryable
