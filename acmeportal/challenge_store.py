import logging
import typing
from dataclasses import dataclass

import acme.messages
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

import acmeportal.util
from acmeportal.client import messages

logger = logging.getLogger(__name__)


@dataclass
class PendingChallenge:
    """Material of a DNS-01 challenge that has been prepared but not completed yet."""

    domain: str
    csr: x509.CertificateSigningRequest
    private_key: rsa.RSAPrivateKey
    order: messages.Order
    challenge: acme.messages.ChallengeBody
    token: str
    key_authorization: str
    dns_record_value: str
    owner: typing.Optional[str] = None
    """Identifies the request that prepared the challenge. Only that request may abandon it."""


class ChallengeStore:
    """In-process store for pending challenge material.

    The store lives as long as the process and is injected into the
    :class:`~acmeportal.orchestrator.ChallengeOrchestrator`. It is not shared across processes.

    Entries are keyed by domain. Storing an entry for a domain that already has one replaces it,
    entries are never merged, so the last request for a domain wins. Callers that run more than one
    step for the same domain hold :meth:`lock` for the duration of the step.
    """

    def __init__(self):
        self._pending: typing.Dict[str, PendingChallenge] = {}
        self._key_authorizations: typing.Dict[str, str] = {}
        self._locks = acmeportal.util.KeyedLock()

    def lock(self, domain: str) -> typing.AsyncContextManager:
        """Returns the advisory lock of the given domain, to be used with ``async with``."""
        return self._locks(domain.lower())

    def put(self, pending: PendingChallenge) -> typing.Optional[PendingChallenge]:
        """Stores *pending*, replacing the entry of the same domain.

        :return: The replaced entry, if there was one.
        """
        previous = self._pending.get(pending.domain.lower())
        if previous is not None:
            logger.info("Replacing the pending challenge of %s", pending.domain)

        self._pending[pending.domain.lower()] = pending
        return previous

    def get(self, domain: str) -> typing.Optional[PendingChallenge]:
        return self._pending.get(domain.lower())

    def remove(self, domain: str) -> typing.Optional[PendingChallenge]:
        return self._pending.pop(domain.lower(), None)

    def abandon(self, domain: str, owner: str = None) -> bool:
        """Drops the pending entry of *domain*.

        :param domain: The domain whose entry is dropped.
        :param owner: If given, the entry is only dropped if it was prepared by this owner.
            An entry another request has stored since is left alone.
        :return: True if an entry was dropped.
        """
        pending = self.get(domain)
        if pending is None:
            return False

        if owner is not None and pending.owner != owner:
            logger.info(
                "Not abandoning the pending challenge of %s, it belongs to another request",
                domain,
            )
            return False

        self.remove(domain)
        logger.info("Abandoned the pending challenge of %s", domain)
        return True

    def set_key_authorization(self, token: str, key_authorization: str) -> None:
        """Publishes the key authorization of an HTTP-01 challenge under its token."""
        self._key_authorizations[token] = key_authorization

    def key_authorization(self, token: str) -> typing.Optional[str]:
        return self._key_authorizations.get(token)

    def clear_key_authorization(self, token: str) -> None:
        self._key_authorizations.pop(token, None)

    def __contains__(self, domain: str) -> bool:
        return domain.lower() in self._pending

    def __len__(self):
        return len(self._pending)
