import asyncio
import hashlib
import json
import logging
import typing
from dataclasses import dataclass

import aiohttp
import yarl

logger = logging.getLogger(__name__)

STATUS = "status"
DNS_CHALLENGE_STATUS = "dns-challenge-status"

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_UNREACHABLE = "unreachable"


@dataclass
class PollOutcome:
    purpose: str
    outcome: str
    polls: int
    response: typing.Optional[dict] = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


def digest(data: dict) -> str:
    """SHA-256 of the canonical JSON form of *data*."""
    return hashlib.sha256(
        json.dumps(data, sort_keys=True, separators=(",", ":")).encode()
    ).hexdigest()


def decide(purpose: str, data: dict) -> typing.Optional[str]:
    """Maps a status response to the outcome it concludes, or *None* to keep polling."""
    status = data.get("status")

    if status == "error":
        return OUTCOME_ERROR

    if purpose == DNS_CHALLENGE_STATUS:
        return OUTCOME_SUCCESS if status == "ready" else None

    return OUTCOME_SUCCESS if status in ("completed", "no_pending_requests") else None


class StatusPoller:
    """Polls the portal's status endpoints until a request concludes.

    At most one poll runs per purpose. Starting a poll cancels the one running for the
    same purpose, whose awaiting caller sees :class:`asyncio.CancelledError`.
    Repeated identical *pending* responses are reported only once.
    """

    ENDPOINTS = {STATUS: "/status", DNS_CHALLENGE_STATUS: "/dns-challenge-status"}

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        interval: float = 5.0,
        max_polls: int = 60,
        max_errors: int = 3,
        on_message: typing.Callable[[str, dict], None] = None,
    ):
        """Creates a :class:`StatusPoller` instance.

        :param session: The session to poll with. It has to carry the portal's session cookie.
        :param base_url: The portal's base URL.
        :param interval: Seconds between two polls.
        :param max_polls: Polls after which the poll gives up.
        :param max_errors: Consecutive transport errors after which the poll gives up.
        :param on_message: Called with the purpose and every new response.
        """
        self._session = session
        self._base_url = yarl.URL(base_url)
        self._interval = interval
        self._max_polls = max_polls
        self._max_errors = max_errors
        self._on_message = on_message or self._log_message
        self._running: typing.Dict[str, asyncio.Task] = {}

    @staticmethod
    def _log_message(purpose: str, data: dict):
        logger.info("%s: %s", purpose, data.get("message") or data.get("status"))

    def running(self, purpose: str) -> bool:
        task = self._running.get(purpose)
        return task is not None and not task.done()

    def start(self, purpose: str) -> "asyncio.Task[PollOutcome]":
        """Starts polling for *purpose*, cancelling the poll that is running for it."""
        if purpose not in self.ENDPOINTS:
            raise ValueError(f"Unknown poll purpose {purpose}")

        self.cancel(purpose)
        task = asyncio.create_task(self._poll(purpose))
        self._running[purpose] = task
        return task

    async def poll(self, purpose: str) -> PollOutcome:
        return await self.start(purpose)

    def cancel(self, purpose: str = None) -> None:
        """Cancels the poll for *purpose*, or all polls."""
        purposes = [purpose] if purpose else list(self._running)
        for p in purposes:
            if (task := self._running.pop(p, None)) and not task.done():
                logger.debug("Cancelling the running %s poll", p)
                task.cancel()

    async def _fetch(self, purpose: str) -> dict:
        async with self._session.get(
            self._base_url.join(yarl.URL(self.ENDPOINTS[purpose]))
        ) as resp:
            return await resp.json()

    async def _poll(self, purpose: str) -> PollOutcome:
        seen = set()
        errors = 0

        for polls in range(1, self._max_polls + 1):
            try:
                data = await self._fetch(purpose)
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
                errors += 1
                logger.warning(
                    "Polling %s failed (%d/%d): %s", purpose, errors, self._max_errors, e
                )
                if errors >= self._max_errors:
                    return PollOutcome(
                        purpose,
                        OUTCOME_UNREACHABLE,
                        polls,
                        message="Lost connection to the server while checking the status.",
                    )
            else:
                errors = 0

                if outcome := decide(purpose, data):
                    self._on_message(purpose, data)
                    return PollOutcome(
                        purpose, outcome, polls, data, data.get("message", "")
                    )

                if (key := digest(data)) not in seen:
                    seen.add(key)
                    self._on_message(purpose, data)

            if polls < self._max_polls:
                await asyncio.sleep(self._interval)

        return PollOutcome(
            purpose,
            OUTCOME_TIMEOUT,
            self._max_polls,
            message="This is taking longer than expected. Check the status again later.",
        )
