import asyncio
import logging
import typing
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """A bounded retry schedule.

    The policy makes ``len(delays) + 1`` attempts in total and sleeps ``delays[i]`` seconds
    after the *i*-th failed attempt. There is no unbounded variant.
    """

    delays: typing.Tuple[float, ...] = ()
    """Seconds to wait before each retry."""

    @classmethod
    def fixed(cls, retries: int, delay: float) -> "RetryPolicy":
        """Retries *retries* times, waiting *delay* seconds each time."""
        return cls(tuple([delay] * retries))

    @classmethod
    def escalating(cls, *delays: float) -> "RetryPolicy":
        """Retries once per given delay, in order."""
        return cls(tuple(delays))

    @classmethod
    def linear(cls, retries: int, step: float) -> "RetryPolicy":
        """Retries *retries* times, waiting *step*, 2 * *step*, … seconds."""
        return cls(tuple(step * (i + 1) for i in range(retries)))

    @property
    def attempts(self) -> int:
        return len(self.delays) + 1

    async def run(
        self,
        coro,
        *args,
        retry_on: typing.Tuple[typing.Type[BaseException], ...] = (Exception,),
        name: str = None,
        **kwargs,
    ):
        """Awaits ``coro(*args, **kwargs)`` until it succeeds or the policy is exhausted.

        :param coro: The coroutine function to call on every attempt.
        :param retry_on: Exception types that trigger a retry. Anything else propagates immediately.
        :param name: Name used in log messages, defaults to the coroutine function's name.
        :raises: The exception of the last attempt once all attempts failed.
        :return: The result of the first successful attempt.
        """
        name = name or getattr(coro, "__name__", repr(coro))

        for attempt, delay in enumerate((*self.delays, None), start=1):
            try:
                return await coro(*args, **kwargs)
            except retry_on as e:
                if delay is None:
                    logger.info("%s failed on the last attempt (%d/%d): %s", name, attempt, self.attempts, e)
                    raise

                logger.info(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    name,
                    attempt,
                    self.attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
