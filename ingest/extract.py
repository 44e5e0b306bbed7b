from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_BASE_URL = "https://api.firecrawl.dev"
DEFAULT_POLL_INTERVAL_SECONDS = 1.5
DEFAULT_MAX_POLL_ATTEMPTS = 40

_TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0)

EVENT_PROMPT = " ".join(
    [
        "Extract upcoming event listings from this newsletter post.",
        "Return one item per event with fields:",
        "name, eventUrl, startDateISO (YYYY-MM-DD when available), startDateTimeText,",
        "locationText, address, description, googleMapsUrl.",
        "Only include actual event listings. Exclude ads, sponsors, subscribe links, and social links.",
    ]
)

EVENT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "events": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    name: {"type": "string"}
                    for name in (
                        "name",
                        "eventUrl",
                        "startDateISO",
                        "startDateTimeText",
                        "locationText",
                        "address",
                        "description",
                        "googleMapsUrl",
                    )
                },
            },
        }
    },
}

SPOT_PROMPT = " ".join(
    [
        "Extract every place listed on this curated list page.",
        "Return one item per place with fields:",
        "name, tag (one of: eat, bar, cafes, go out, shops), location (street address),",
        "mapLink, cornerLink, curatorComment, shortDescription, details.",
        "Only include actual places. Exclude ads, navigation, and social links.",
    ]
)

SPOT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "spots": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    name: {"type": "string"}
                    for name in (
                        "name",
                        "tag",
                        "location",
                        "mapLink",
                        "cornerLink",
                        "curatorComment",
                        "shortDescription",
                        "details",
                    )
                },
            },
        }
    },
}


class ExtractError(Exception):
    pass


class ExtractState(enum.Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ExtractJob:
    job_id: str | None = None
    state: ExtractState = ExtractState.SUBMITTED
    attempts: int = 0
    data: dict = field(default_factory=dict)
    error: str = ""

    def complete(self, payload: dict) -> None:
        self.state = ExtractState.COMPLETED
        data = payload.get("data")
        self.data = data if isinstance(data, dict) else {}

    def fail(self, message: str) -> None:
        self.state = ExtractState.FAILED
        self.error = message


class FirecrawlClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_attempts = max(1, max_attempts)
        self.sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _json(self, response: httpx.Response, what: str) -> dict:
        if not response.is_success:
            raise ExtractError(f"{what} failed ({response.status_code}): {response.text}")
        try:
            payload = response.json()
        except ValueError as e:
            raise ExtractError(f"{what} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise ExtractError(f"{what} returned an unexpected payload")
        if payload.get("success") is False:
            raise ExtractError(f"Firecrawl error: {payload.get('error') or 'unknown error'}")
        return payload

    async def submit_extract(self, urls: list[str], prompt: str, schema: dict) -> ExtractJob:
        response = await self.client.post(
            f"{self.base_url}/v1/extract",
            headers=self._headers(),
            json={
                "urls": urls,
                "prompt": prompt,
                "schema": schema,
                "allowExternalLinks": False,
                "includeSubdomains": False,
                "enableWebSearch": False,
            },
            timeout=_TIMEOUT,
        )
        payload = self._json(response, "Firecrawl request")
        job = ExtractJob(job_id=str(payload["id"]) if payload.get("id") else None)
        if payload.get("data") is not None or job.job_id is None:
            job.complete(payload)
        return job

    async def poll_extract(self, job: ExtractJob) -> ExtractJob:
        job.state = ExtractState.POLLING
        while job.attempts < self.max_attempts:
            job.attempts += 1
            response = await self.client.get(
                f"{self.base_url}/v1/extract/{job.job_id}",
                headers=self._headers(),
                timeout=_TIMEOUT,
            )
            payload = self._json(response, "Firecrawl extract poll")
            status = payload.get("status")
            if status == "completed":
                job.complete(payload)
                return job
            if status in ("failed", "cancelled"):
                job.fail(f"Firecrawl extract job {status}")
                return job
            await self.sleep(self.poll_interval)

        job.state = ExtractState.TIMED_OUT
        job.error = "Firecrawl extract polling timed out."
        return job

    async def run_extract(self, urls: list[str], prompt: str, schema: dict) -> dict:
        job = await self.submit_extract(urls, prompt, schema)
        if job.state is ExtractState.SUBMITTED:
            logger.debug("polling extract job %s", job.job_id)
            job = await self.poll_extract(job)
        if job.state is not ExtractState.COMPLETED:
            raise ExtractError(job.error)
        return job.data

    async def extract_events(self, post_url: str) -> list:
        data = await self.run_extract([post_url], EVENT_PROMPT, EVENT_SCHEMA)
        events = data.get("events")
        return events if isinstance(events, list) else []

    async def extract_spots(self, page_url: str) -> list:
        data = await self.run_extract([page_url], SPOT_PROMPT, SPOT_SCHEMA)
        spots = data.get("spots")
        return spots if isinstance(spots, list) else []
