import asyncio

import httpx
import pytest

from ingest.extract import (
    EVENT_SCHEMA,
    ExtractError,
    ExtractJob,
    ExtractState,
    FirecrawlClient,
)


def _client_with(handler, **kwargs):
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    firecrawl = FirecrawlClient(http, api_key="fc-test", sleep=fake_sleep, **kwargs)
    return http, firecrawl, sleeps


def test_inline_data_completes_without_polling() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer fc-test"
        return httpx.Response(200, json={"success": True, "data": {"events": [{"name": "A"}]}})

    async def run():
        http, firecrawl, sleeps = _client_with(handler)
        async with http:
            job = await firecrawl.submit_extract(["https://x.com/p"], "prompt", EVENT_SCHEMA)
            return job, sleeps

    job, sleeps = asyncio.run(run())
    assert job.state is ExtractState.COMPLETED
    assert job.data == {"events": [{"name": "A"}]}
    assert sleeps == []


def test_polls_until_completed() -> None:
    statuses = iter(["processing", "processing", "completed"])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"success": True, "id": "job-1"})
        status = next(statuses)
        doc = {"success": True, "status": status}
        if status == "completed":
            doc["data"] = {"events": [{"name": "B"}]}
        return httpx.Response(200, json=doc)

    async def run():
        http, firecrawl, sleeps = _client_with(handler, poll_interval=1.5)
        async with http:
            return await firecrawl.extract_events("https://x.com/p"), sleeps

    events, sleeps = asyncio.run(run())
    assert events == [{"name": "B"}]
    assert sleeps == [1.5, 1.5]


def test_failed_job_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"success": True, "id": "job-2"})
        return httpx.Response(200, json={"success": True, "status": "cancelled"})

    async def run():
        http, firecrawl, _ = _client_with(handler)
        async with http:
            await firecrawl.extract_events("https://x.com/p")

    with pytest.raises(ExtractError, match="Firecrawl extract job cancelled"):
        asyncio.run(run())


def test_polling_times_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "status": "processing"})

    async def run():
        http, firecrawl, sleeps = _client_with(handler, max_attempts=3)
        async with http:
            job = await firecrawl.poll_extract(ExtractJob(job_id="job-3"))
            return job, sleeps

    job, sleeps = asyncio.run(run())
    assert job.state is ExtractState.TIMED_OUT
    assert job.attempts == 3
    assert job.error == "Firecrawl extract polling timed out."
    assert len(sleeps) == 3


def test_unsuccessful_payload_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "quota exceeded"})

    async def run():
        http, firecrawl, _ = _client_with(handler)
        async with http:
            await firecrawl.extract_spots("https://x.com/list")

    with pytest.raises(ExtractError, match="quota exceeded"):
        asyncio.run(run())


def test_http_error_status_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="unauthorized")

    async def run():
        http, firecrawl, _ = _client_with(handler)
        async with http:
            await firecrawl.extract_events("https://x.com/p")

    with pytest.raises(ExtractError, match=r"failed \(401\)"):
        asyncio.run(run())
