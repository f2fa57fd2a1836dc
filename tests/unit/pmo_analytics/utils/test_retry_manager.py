# -*- coding: utf-8 -*-
"""Location: ./tests/unit/pmo_analytics/utils/test_retry_manager.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Unit tests for the resilient HTTP client.
"""

# Standard
import asyncio

# Third-Party
import httpx
import pytest

# First-Party
from pmo_analytics.utils.retry_manager import RequestAbortedError, ResilientHttpClient


def make_client(handler, max_retries=2, **kwargs):
    return ResilientHttpClient(
        max_retries=max_retries,
        base_backoff=0.0,
        max_delay=0.0,
        jitter_max=0.0,
        client_args={"transport": httpx.MockTransport(handler), "base_url": "https://op.test"},
        **kwargs,
    )


def test_backoff_grows_and_is_capped():
    client = ResilientHttpClient(base_backoff=1.0, max_delay=5.0, jitter_max=0.0)
    assert [client.backoff_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_is_bounded():
    client = ResilientHttpClient(base_backoff=1.0, max_delay=5.0, jitter_max=0.25)
    for _ in range(50):
        assert 1.0 <= client.backoff_delay(0) <= 1.25


@pytest.mark.asyncio
async def test_retries_retryable_status_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(503 if len(calls) == 1 else 200, json={"ok": True})

    async with make_client(handler) as client:
        response = await client.get("/api/v3/projects/1")

    assert response.status_code == 200
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_exhausted_retries_return_last_response():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(502)

    async with make_client(handler, max_retries=2) as client:
        response = await client.get("/x")

    assert response.status_code == 502
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(404)

    async with make_client(handler) as client:
        response = await client.get("/missing")

    assert response.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_custom_retry_statuses():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(409 if len(calls) == 1 else 201)

    async with make_client(handler, retry_on_status=[409]) as client:
        response = await client.post("/x", json={})

    assert response.status_code == 201


@pytest.mark.asyncio
async def test_transport_error_is_retried_then_reraised():
    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler, max_retries=1) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get("/x")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_transport_error_recovers():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200)

    async with make_client(handler) as client:
        assert (await client.get("/x")).status_code == 200


@pytest.mark.asyncio
async def test_preset_abort_never_sends():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200)

    abort = asyncio.Event()
    abort.set()
    async with make_client(handler) as client:
        with pytest.raises(RequestAbortedError):
            await client.get("/x", abort=abort)

    assert calls == []


@pytest.mark.asyncio
async def test_abort_cancels_in_flight_request():
    async def handler(request):
        await asyncio.sleep(10)
        return httpx.Response(200)

    abort = asyncio.Event()
    async with make_client(handler) as client:
        asyncio.get_running_loop().call_later(0.01, abort.set)
        with pytest.raises(RequestAbortedError):
            await asyncio.wait_for(client.get("/slow", abort=abort), timeout=2)


@pytest.mark.asyncio
async def test_abort_interrupts_backoff():
    def handler(request):
        return httpx.Response(503)

    abort = asyncio.Event()
    client = ResilientHttpClient(
        max_retries=3,
        base_backoff=10.0,
        max_delay=10.0,
        jitter_max=0.0,
        client_args={"transport": httpx.MockTransport(handler), "base_url": "https://op.test"},
    )
    async with client:
        asyncio.get_running_loop().call_later(0.01, abort.set)
        with pytest.raises(RequestAbortedError):
            await asyncio.wait_for(client.get("/x", abort=abort), timeout=2)
