import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web

from acmeportal.poller import (
    DNS_CHALLENGE_STATUS,
    OUTCOME_ERROR,
    OUTCOME_SUCCESS,
    OUTCOME_TIMEOUT,
    OUTCOME_UNREACHABLE,
    STATUS,
    StatusPoller,
    decide,
    digest,
)

PENDING = {"status": "pending", "domain": "example.com", "stage": "processing"}


class ScriptedPortal:
    """Answers the status endpoints with scripted responses, the last one repeats."""

    def __init__(self):
        self.responses = {"/status": [PENDING], "/dns-challenge-status": [PENDING]}
        self.hits = {"/status": 0, "/dns-challenge-status": 0}
        self.app = web.Application()
        self.app.router.add_get("/status", self.handle)
        self.app.router.add_get("/dns-challenge-status", self.handle)

    async def handle(self, request: web.Request) -> web.Response:
        self.hits[request.path] += 1
        script = self.responses[request.path]
        data = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(data, int):
            return web.Response(status=data, text="Internal Server Error")
        return web.json_response(data)


@pytest.fixture
def scripted():
    return ScriptedPortal()


@pytest_asyncio.fixture
async def scripted_url(scripted, unused_tcp_port):
    runner = web.AppRunner(scripted.app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", unused_tcp_port)
    await site.start()
    yield f"http://127.0.0.1:{unused_tcp_port}"
    await runner.cleanup()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def messages():
    return []


@pytest.fixture
def poller(session, scripted_url, messages):
    return StatusPoller(
        session,
        scripted_url,
        interval=0,
        max_polls=5,
        max_errors=2,
        on_message=lambda purpose, data: messages.append(data),
    )


def test_decide():
    assert decide(STATUS, {"status": "completed"}) == OUTCOME_SUCCESS
    assert decide(STATUS, {"status": "no_pending_requests"}) == OUTCOME_SUCCESS
    assert decide(STATUS, {"status": "error"}) == OUTCOME_ERROR
    assert decide(STATUS, PENDING) is None
    assert decide(DNS_CHALLENGE_STATUS, {"status": "ready"}) == OUTCOME_SUCCESS
    assert decide(DNS_CHALLENGE_STATUS, {"status": "preparing"}) is None
    assert decide(DNS_CHALLENGE_STATUS, {"status": "error"}) == OUTCOME_ERROR


def test_digest_ignores_key_order():
    assert digest({"a": 1, "b": 2}) == digest({"b": 2, "a": 1})
    assert digest({"a": 1}) != digest({"a": 2})


@pytest.mark.asyncio
async def test_repeated_pending_responses_are_reported_once(poller, scripted, messages):
    validating = dict(PENDING, stage="validating")
    completed = {"status": "completed", "domain": "example.com", "recordId": "r1", "message": "done"}
    scripted.responses["/status"] = [PENDING, PENDING, validating, validating, completed]

    outcome = await poller.poll(STATUS)

    assert outcome.succeeded
    assert outcome.polls == 5
    assert outcome.response == completed
    assert outcome.message == "done"
    assert messages == [PENDING, validating, completed]


@pytest.mark.asyncio
async def test_error(poller, scripted):
    scripted.responses["/dns-challenge-status"] = [
        {"status": "preparing"},
        {"status": "error", "message": "No pending DNS challenge found."},
    ]

    outcome = await poller.poll(DNS_CHALLENGE_STATUS)

    assert outcome.outcome == OUTCOME_ERROR
    assert outcome.polls == 2
    assert outcome.message == "No pending DNS challenge found."


@pytest.mark.asyncio
async def test_timeout(poller, scripted, messages):
    outcome = await poller.poll(STATUS)

    assert outcome.outcome == OUTCOME_TIMEOUT
    assert outcome.polls == 5
    assert outcome.message.startswith("This is taking longer than expected.")
    assert scripted.hits["/status"] == 5
    assert messages == [PENDING]


@pytest.mark.asyncio
async def test_transport_errors(poller, scripted):
    scripted.responses["/status"] = [500, 500, PENDING]

    outcome = await poller.poll(STATUS)

    assert outcome.outcome == OUTCOME_UNREACHABLE
    assert outcome.polls == 2


@pytest.mark.asyncio
async def test_single_transport_error_is_tolerated(poller, scripted):
    scripted.responses["/status"] = [500, PENDING, 500, {"status": "completed"}]

    outcome = await poller.poll(STATUS)

    assert outcome.succeeded
    assert outcome.polls == 4


@pytest.mark.asyncio
async def test_unreachable_server(session, unused_tcp_port):
    poller = StatusPoller(session, f"http://127.0.0.1:{unused_tcp_port}", interval=0, max_errors=3)

    outcome = await poller.poll(STATUS)

    assert outcome.outcome == OUTCOME_UNREACHABLE
    assert outcome.polls == 3


@pytest.mark.asyncio
async def test_starting_a_poll_cancels_the_running_one(session, scripted_url):
    poller = StatusPoller(session, scripted_url, interval=0.05, max_polls=100)

    first = poller.start(STATUS)
    await asyncio.sleep(0)
    second = poller.start(STATUS)

    with pytest.raises(asyncio.CancelledError):
        await first
    assert poller.running(STATUS)

    poller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await second
    assert not poller.running(STATUS)


def test_unknown_purpose():
    poller = StatusPoller(None, "http://localhost:3001")

    with pytest.raises(ValueError):
        poller.start("certificates")
