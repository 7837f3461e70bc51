import contextlib
import logging
import typing

import dns.asyncresolver
import dns.exception
import dns.resolver
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeportal.exceptions import (
    DnsMismatchError,
    DnsNotFoundError,
    DnsVerificationError,
)
from acmeportal.retry import RetryPolicy

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "_acme-challenge"


def record_name(domain: str) -> str:
    """Returns the name of the TXT record that carries the DNS-01 value of *domain*."""
    return f"{CHALLENGE_PREFIX}.{domain.lstrip('*.')}"


def normalize(value: str) -> str:
    """Strips surrounding whitespace and one layer of wrapping double quotes.

    Some DNS providers store TXT values with the quotes that users pasted into their UI.
    """
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1].strip()
    return value


def matches(found: str, expected: str) -> bool:
    """Compares a found TXT value against the expected one, raw and normalized on both sides."""
    return bool({found, normalize(found)} & {expected, normalize(expected)})


class DnsPropagationChecker:
    """Checks whether a DNS-01 TXT record is visible in public DNS.

    Every attempt builds a fresh resolver so that no answer is served from a cache.
    The check is advisory, the CA's validation is authoritative.
    """

    class Config(BaseSettings, extra="forbid"):
        retries: int = 2
        """Number of times resolution is retried after the first attempt"""
        delay: float = 4.0
        """Seconds between two attempts"""
        nameservers: list[str] = Field(default_factory=list)
        """Nameservers to query instead of the ones from the host configuration"""
        lifetime: float = 10.0
        """Total seconds a single resolution may take"""

    def __init__(
        self,
        cfg: Config = None,
        resolver_factory: typing.Callable[[], dns.asyncresolver.Resolver] = None,
    ):
        self._cfg = cfg or self.Config()
        self._resolver_factory = resolver_factory or self._make_resolver
        self.policy = RetryPolicy.fixed(self._cfg.retries, self._cfg.delay)

    def _make_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver(configure=not self._cfg.nameservers)
        if self._cfg.nameservers:
            resolver.nameservers = self._cfg.nameservers
        resolver.lifetime = self._cfg.lifetime
        return resolver

    async def query_txt_record(self, name: str) -> typing.List[str]:
        """Queries a DNS TXT record.

        Strings of a multi-string record are joined into one value.
        Missing names and unreachable nameservers yield an empty list.

        :param name: Name of the TXT record to query.
        :return: List of the TXT values found.
        """
        txt_records = []

        with contextlib.suppress(
            dns.asyncresolver.NXDOMAIN,
            dns.asyncresolver.NoAnswer,
            dns.resolver.NoNameservers,
            dns.exception.Timeout,
        ):
            resp = await self._resolver_factory().resolve(name, "TXT")

            for record in resp.rrset:
                txt_records.append(b"".join(record.strings).decode())

        return txt_records

    async def _check(self, name: str, expected_value: str) -> typing.List[str]:
        found = await self.query_txt_record(name)
        logger.debug("TXT %s: %s", name, found)

        if not found:
            raise DnsNotFoundError(name, expected_value)

        if not any(matches(value, expected_value) for value in found):
            raise DnsMismatchError(name, expected_value, found)

        return found

    async def verify(self, domain: str, expected_value: str) -> typing.List[str]:
        """Verifies that the challenge TXT record of *domain* carries *expected_value*.

        :param domain: The domain, the record queried is ``_acme-challenge.<domain>``.
        :param expected_value: The record value handed out for the challenge.
        :raises:

            * :class:`~acmeportal.exceptions.DnsNotFoundError` If no TXT record exists after all attempts.
            * :class:`~acmeportal.exceptions.DnsMismatchError` If records exist but none matches.

        :return: The TXT values found.
        """
        name = record_name(domain)
        found = await self.policy.run(
            self._check,
            name,
            expected_value,
            retry_on=(DnsVerificationError,),
            name=f"DNS check of {name}",
        )
        logger.info("Found the expected TXT record at %s", name)
        return found
