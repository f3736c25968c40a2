"""TMDB enrichment client tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from heroreel.config import Settings
from heroreel.errors import UpstreamThrottled
from heroreel.models import CandidateItem, RateLimitState
from heroreel.services.enrichment import EnrichmentClient, parse_retry_after

from conftest import NOW_MS, FakeClock

TMDB_URL = "https://api.themoviedb.org/3"


def _settings(token: str | None = "secret-token") -> Settings:
    return Settings(_env_file=None, TMDB_ACCESS_TOKEN=token)


def _movie(**overrides) -> CandidateItem:
    payload = {"id": "m1", "kind": "movies", "title": "Heat", "tmdbId": "949"}
    payload.update(overrides)
    return CandidateItem.model_validate(payload)


def _details(poster: str | None, backdrops: list[str]) -> dict:
    return {
        "id": 949,
        "poster_path": poster,
        "backdrop_path": None,
        "images": {
            "backdrops": [
                {"file_path": path, "vote_average": 5 - index}
                for index, path in enumerate(backdrops)
            ],
            "posters": [],
        },
    }


def test_parse_retry_after_accepts_seconds_and_dates() -> None:
    assert parse_retry_after("2", now=NOW_MS) == 2_000
    assert parse_retry_after("", now=NOW_MS) == 0
    assert parse_retry_after(None, now=NOW_MS) == 0
    assert parse_retry_after("Mon, 10 Jun 2024 06:13:30 GMT", now=NOW_MS) == 10_000


def test_rate_limit_backs_off_and_blocks_calls() -> None:
    async def runner() -> None:
        clock = FakeClock()
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(429, headers={"Retry-After": "2"}, request=request)
            return httpx.Response(200, json=_details("/p.jpg", ["/b.jpg"]), request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=clock)
            observed: list[RateLimitState] = []
            enricher.subscribe(observed.append)

            with pytest.raises(UpstreamThrottled) as excinfo:
                await enricher.enrich(_movie())

            state = enricher.get_rate_limit_state()
            assert state.active is True
            assert state.strikes == 1
            assert state.last_status == 429
            assert state.until == NOW_MS + 2_000
            assert excinfo.value.retry_after_ms == 2_000
            assert observed and observed[-1].active is True

            with pytest.raises(UpstreamThrottled):
                await enricher.enrich(_movie())
            assert calls == 1

            clock.advance(2_001)
            assert enricher.get_rate_limit_state().active is False

            artwork = await enricher.enrich(_movie())
            assert artwork is not None
            assert artwork.poster == "https://image.tmdb.org/t/p/w780/p.jpg"
            assert enricher.get_rate_limit_state() == RateLimitState()
            assert calls == 2

    asyncio.run(runner())


def test_lapsed_window_forgives_one_strike() -> None:
    async def runner() -> None:
        clock = FakeClock()
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(429, headers={"Retry-After": "1"}, request=request)
            return httpx.Response(404, request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=clock)

            with pytest.raises(UpstreamThrottled):
                await enricher.enrich(_movie())
            assert enricher.get_rate_limit_state().strikes == 1

            clock.advance(5_000)
            assert await enricher.enrich(_movie()) is None

            state = enricher.get_rate_limit_state()
            assert state.active is False
            assert state.until == 0
            assert state.retry_after_ms == 0
            assert state.strikes == 0

    asyncio.run(runner())


def test_reading_state_does_not_notify_listeners() -> None:
    async def runner() -> None:
        clock = FakeClock()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=clock)
            observed: list[RateLimitState] = []
            enricher.subscribe(observed.append)

            with pytest.raises(UpstreamThrottled):
                await enricher.enrich(_movie())
            assert len(observed) == 1

            clock.advance(10_000)
            first = enricher.get_rate_limit_state()
            second = enricher.get_rate_limit_state()

            assert first == second
            assert first.active is False
            assert first.strikes == 1
            assert len(observed) == 1

    asyncio.run(runner())


def test_success_keeps_strikes_so_next_throttle_multiplies() -> None:
    async def runner() -> None:
        clock = FakeClock()
        gate = asyncio.Event()
        calls = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls <= 2:
                await gate.wait()
                return httpx.Response(429, request=request)
            if calls == 3:
                return httpx.Response(200, json=_details("/p.jpg", []), request=request)
            return httpx.Response(429, request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=clock)

            # Two requests admitted before either is throttled.
            tasks = [
                asyncio.create_task(enricher.enrich(_movie())),
                asyncio.create_task(enricher.enrich(_movie(id="m2", tmdbId="950"))),
            ]
            while calls < 2:
                await asyncio.sleep(0)
            gate.set()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            assert all(isinstance(result, UpstreamThrottled) for result in results)

            state = enricher.get_rate_limit_state()
            assert state.strikes == 2
            assert state.retry_after_ms == 2_000
            assert state.until == clock.now + 2_000

            clock.advance(2_000)
            assert await enricher.enrich(_movie(id="m3", tmdbId="951")) is not None
            state = enricher.get_rate_limit_state()
            assert state.active is False
            assert state.last_status is None
            assert state.strikes == 1

            with pytest.raises(UpstreamThrottled):
                await enricher.enrich(_movie(id="m4", tmdbId="952"))
            state = enricher.get_rate_limit_state()
            assert state.strikes == 2
            assert state.retry_after_ms == 2_000
            assert state.until == clock.now + 2_000

    asyncio.run(runner())


def test_timeout_counts_as_throttle() -> None:
    async def runner() -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("upstream too slow", request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=FakeClock())

            with pytest.raises(UpstreamThrottled):
                await enricher.enrich(_movie())

            state = enricher.get_rate_limit_state()
            assert state.active is True
            assert state.last_status is None
            assert state.strikes == 1

    asyncio.run(runner())


def test_missing_token_disables_enrichment() -> None:
    async def runner() -> None:
        def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
            raise AssertionError("no upstream call expected")

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(token=None), client)

            assert enricher.is_enabled is False
            assert await enricher.enrich(_movie()) is None

    asyncio.run(runner())


def test_rejected_token_disables_client() -> None:
    async def runner() -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(401, request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=FakeClock())

            assert await enricher.enrich(_movie()) is None
            assert enricher.is_enabled is False
            assert await enricher.enrich(_movie(id="m2", tmdbId="1")) is None
            assert calls == 1

    asyncio.run(runner())


def test_language_fallback_merges_backdrops() -> None:
    async def runner() -> None:
        seen: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            language = request.url.params["language"]
            seen.append((request.url.path, language))
            assert request.headers["Authorization"] == "Bearer secret-token"
            assert request.url.params["append_to_response"] == "images"
            if language == "de-DE":
                return httpx.Response(200, json=_details("/de.jpg", []), request=request)
            return httpx.Response(
                200, json=_details("/en.jpg", ["/b1.jpg", "/b2.jpg"]), request=request
            )

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=FakeClock())

            artwork = await enricher.enrich(_movie(), language="de-DE")
            assert artwork is not None
            assert artwork.source == "tmdb"
            assert artwork.poster == "https://image.tmdb.org/t/p/w780/de.jpg"
            assert artwork.backdrops == [
                "https://image.tmdb.org/t/p/original/b1.jpg",
                "https://image.tmdb.org/t/p/original/b2.jpg",
            ]
            assert seen == [("/3/movie/949", "de-DE"), ("/3/movie/949", "en-US")]

            await enricher.enrich(_movie(), language="de-DE")
            assert len(seen) == 2

    asyncio.run(runner())


def test_imdb_lookup_resolves_series_id() -> None:
    async def runner() -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/3/find/tt0903747":
                assert request.url.params["external_source"] == "imdb_id"
                return httpx.Response(
                    200, json={"tv_results": [{"id": 1396}], "movie_results": []}, request=request
                )
            return httpx.Response(200, json=_details("/bb.jpg", ["/bb-1.jpg"]), request=request)

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=FakeClock())
            show = CandidateItem(id="s1", kind="tv", title="Breaking Bad", imdb_id="tt0903747")

            artwork = await enricher.enrich(show)
            assert artwork is not None
            assert artwork.backdrops == ["https://image.tmdb.org/t/p/original/bb-1.jpg"]
            assert paths == ["/3/find/tt0903747", "/3/tv/1396"]

    asyncio.run(runner())


def test_items_without_ids_are_not_looked_up() -> None:
    async def runner() -> None:
        def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
            raise AssertionError("no upstream call expected")

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(base_url=TMDB_URL, transport=transport) as client:
            enricher = EnrichmentClient(_settings(), client, clock=FakeClock())

            assert await enricher.enrich(_movie(tmdbId=None)) is None

    asyncio.run(runner())
