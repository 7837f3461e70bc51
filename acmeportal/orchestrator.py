import asyncio
import contextlib
import logging
import typing
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import acme.challenges
import acme.messages
import aiohttp
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import Field
from pydantic_settings import BaseSettings

import acmeportal.util
from acmeportal.challenge_store import ChallengeStore, PendingChallenge
from acmeportal.client import (
    AcmeClient,
    CertificateNotReady,
    CouldNotCompleteChallenge,
    PollingException,
)
from acmeportal.client import messages
from acmeportal.dns_checker import DnsPropagationChecker, record_name
from acmeportal.exceptions import (
    CertificateDownloadError,
    ChallengeInvalidError,
    ChallengeTimeoutError,
    ChallengeValidationError,
    DnsVerificationError,
    NoPendingChallengeError,
    RateLimitError,
)
from acmeportal.retry import RetryPolicy

logger = logging.getLogger(__name__)

FALLBACK_VALUE_PREFIX = "fallback-challenge-value-"


@dataclass
class DnsRecord:
    """The TXT record a user has to publish to complete a DNS-01 challenge."""

    name: str
    value: str
    fallback: bool = False
    """True if the value is a stand-in because the CA could not be reached. Never set in production."""


@dataclass
class IssuedCertificate:
    certificate_path: Path
    private_key_path: Path
    certificate: str
    private_key: str
    not_after: datetime
    domain: str = ""
    challenge_type: str = field(default="dns-01")


@contextlib.contextmanager
def rate_limits():
    """Raises the CA's *rateLimited* problem documents as :class:`~acmeportal.exceptions.RateLimitError`."""
    try:
        yield
    except acme.messages.Error as e:
        if e.code == "rateLimited":
            raise RateLimitError(f"Rate limit exceeded: {e.detail or e}") from e
        raise


class ChallengeOrchestrator:
    """Drives certificate issuance from order creation to the PEM chain on disk.

    The orchestrator sequences the individual steps of :class:`~acmeportal.client.AcmeClient` and
    owns all waiting and retrying between them. Pending DNS-01 material is kept in the injected
    :class:`~acmeportal.challenge_store.ChallengeStore`. Steps for the same domain are serialized
    by the store's per-domain lock.
    """

    class Config(BaseSettings, extra="forbid"):
        validation_delays: list[float] = Field(default_factory=lambda: [30.0, 120.0])
        """Seconds to wait before the second, third, … attempt to get a challenge validated"""
        challenge_poll_delay: float = 5.0
        """Seconds between two polls of a challenge's status"""
        challenge_poll_tries: int = 24
        """Polls of a challenge's status before a validation attempt times out"""
        settle_delay: float = 10.0
        """Seconds to wait between a valid DNS-01 challenge and finalization"""
        download_retries: int = 4
        """Retries of the certificate download"""
        download_backoff: float = 5.0
        """The n-th download retry waits n times this many seconds"""
        key_size: int = 2048
        """Size of the RSA keys generated for certificates"""
        production: bool = False
        """Propagate CA failures while preparing DNS-01 challenges instead of handing out fallback values"""
        certificate_dir: Path = Path("certificates")
        """Where issued certificates and their keys are written"""

    def __init__(
        self,
        cfg: Config,
        client: AcmeClient,
        store: ChallengeStore,
        checker: DnsPropagationChecker,
    ):
        self._cfg = cfg
        self._client = client
        self._store = store
        self._checker = checker

        self._validation_policy = RetryPolicy.escalating(*cfg.validation_delays)
        self._download_policy = RetryPolicy.linear(
            cfg.download_retries, cfg.download_backoff
        )

        self._account_email: typing.Optional[str] = None
        self._client_lock = asyncio.Lock()

    @property
    def store(self) -> ChallengeStore:
        return self._store

    def key_authorization_for(self, token: str) -> typing.Optional[str]:
        """Returns the key authorization to serve at ``/.well-known/acme-challenge/<token>``."""
        return self._store.key_authorization(token)

    async def abandon(self, domain: str, owner: str = None) -> bool:
        """Forgets the pending DNS-01 challenge of *domain*.

        The order is left to expire at the CA. Waits for a step that is running for *domain*.

        :param domain: The domain whose challenge is forgotten.
        :param owner: If given, only a challenge prepared by this owner is forgotten.
        :return: True if a pending challenge was forgotten.
        """
        async with self._store.lock(domain):
            return self._store.abandon(domain, owner=owner)

    async def begin_http_challenge(
        self,
        domain: str,
        email: str,
        on_ready: typing.Callable[[], typing.Awaitable[None]] = None,
    ) -> IssuedCertificate:
        """Obtains a certificate for *domain* via HTTP-01.

        The key authorization is published through :meth:`key_authorization_for` until the
        issuance concludes, also when it fails.

        :param domain: The domain to request a certificate for.
        :param email: Contact email of the ACME account.
        :param on_ready: Awaited once the challenge response is published, before the CA is asked to validate.
        :raises:

            * :class:`~acmeportal.exceptions.ChallengeTimeoutError` If the CA did not validate in time.
            * :class:`~acmeportal.exceptions.ChallengeInvalidError` If the CA reported the challenge as invalid.
            * :class:`~acmeportal.exceptions.CertificateDownloadError` If the certificate could not be fetched.
            * :class:`~acmeportal.exceptions.RateLimitError` If the CA throttles the account.

        :return: The issued certificate.
        """
        async with acmeportal.util.PerformanceMeasure(
            f"HTTP-01 issuance for {domain}", logger
        ):
            with rate_limits():
                await self._prepare_client(email)
                private_key, csr = await self._generate_key_and_csr(domain)

                order = await self._client.order_create([domain])
                challenge = await self._select_challenge(
                    order, domain, acme.challenges.HTTP01
                )

                token = challenge.chall.encode("token")
                self._store.set_key_authorization(
                    token, challenge.chall.key_authorization(self._client.account_key)
                )
                try:
                    if on_ready:
                        await on_ready()

                    await self._client.challenge_validate(challenge.uri)
                    await self._wait_valid(challenge.uri)

                    order = await self._client.order_finalize(order, csr)
                    pem = await self._download(order)
                finally:
                    self._store.clear_key_authorization(token)

                return self._persist(domain, pem, private_key, "http-01")

    async def begin_dns_challenge(
        self, domain: str, email: str, owner: str = None
    ) -> DnsRecord:
        """Prepares a DNS-01 challenge for *domain*.

        Creates an order, picks its DNS-01 challenge and stores the material needed to
        complete it later. The returned value is the digest computed by
        :meth:`acme.challenges.DNS01.validation`, to be published unchanged.

        If the CA cannot be reached outside of production mode, a recognizable fallback value
        is returned and nothing is stored.

        :param domain: The domain to request a certificate for.
        :param email: Contact email of the ACME account.
        :param owner: Stored with the challenge, see :meth:`abandon`.
        :return: The TXT record to publish.
        """
        async with acmeportal.util.PerformanceMeasure(
            f"DNS-01 preparation for {domain}", logger
        ):
            try:
                async with self._store.lock(domain):
                    with rate_limits():
                        return await self._prepare_dns_challenge(domain, email, owner)
            except Exception:
                if self._cfg.production:
                    raise

                logger.exception(
                    "Could not prepare the DNS-01 challenge of %s, handing out a fallback value",
                    domain,
                )
                return DnsRecord(
                    record_name(domain),
                    f"{FALLBACK_VALUE_PREFIX}{acmeportal.util.timestamp_ms()}",
                    fallback=True,
                )

    async def _prepare_dns_challenge(self, domain, email, owner):
        await self._prepare_client(email)
        private_key, csr = await self._generate_key_and_csr(domain)

        order = await self._client.order_create([domain])
        challenge = await self._select_challenge(order, domain, acme.challenges.DNS01)

        account_key = self._client.account_key
        value = challenge.chall.validation(account_key)
        self._store.put(
            PendingChallenge(
                domain=domain,
                csr=csr,
                private_key=private_key,
                order=order,
                challenge=challenge,
                token=challenge.chall.encode("token"),
                key_authorization=challenge.chall.key_authorization(account_key),
                dns_record_value=value,
                owner=owner,
            )
        )

        name = challenge.chall.validation_domain_name(domain.lstrip("*."))
        logger.info("DNS-01 challenge of %s: TXT %s = %s", domain, name, value)
        return DnsRecord(name, value)

    async def complete_dns_challenge(
        self, domain: str, owner: str = None
    ) -> IssuedCertificate:
        """Completes the pending DNS-01 challenge of *domain* and obtains the certificate.

        The local propagation check is advisory: its failure is logged and the CA is asked
        to validate regardless.

        :raises:

            * :class:`~acmeportal.exceptions.NoPendingChallengeError` If no challenge was prepared for *domain* \
                or it belongs to another owner than *owner*.
            * :class:`~acmeportal.exceptions.ChallengeValidationError` If the CA did not validate the challenge.
            * :class:`~acmeportal.exceptions.CertificateDownloadError` If the certificate could not be fetched.

        :return: The issued certificate.
        """
        async with acmeportal.util.PerformanceMeasure(
            f"DNS-01 completion for {domain}", logger
        ):
            async with self._store.lock(domain):
                pending = self._store.get(domain)
                if pending is None or (owner is not None and pending.owner != owner):
                    raise NoPendingChallengeError(domain)

                try:
                    await self._checker.verify(domain, pending.dns_record_value)
                except DnsVerificationError as e:
                    logger.warning(
                        "Local DNS check for %s failed, asking the CA anyway: %s",
                        domain,
                        e,
                    )

                with rate_limits():
                    await self._validate(pending.challenge.uri)
                    order = await self._settle_and_finalize(pending.order, pending)
                    pem = await self._download(order)

                issued = self._persist(domain, pem, pending.private_key, "dns-01")
                self._store.remove(domain)
                return issued

    async def complete_verified_dns_challenge(
        self, domain: str, email: str, owner: str = None
    ) -> IssuedCertificate:
        """Completes the pending DNS-01 challenge of *domain* whose record has been verified already.

        Continues from whatever state the order is in at the CA, so that an issuance that was
        interrupted can be picked up again.

        :raises:

            * :class:`~acmeportal.exceptions.NoPendingChallengeError` If no challenge was prepared for *domain* \
                or it belongs to another owner than *owner*.
            * :class:`~acmeportal.exceptions.ChallengeValidationError` If the order is invalid \
                or the challenge is not validated.
            * :class:`~acmeportal.exceptions.CertificateDownloadError` If the certificate could not be fetched.

        :return: The issued certificate.
        """
        async with acmeportal.util.PerformanceMeasure(
            f"verified DNS-01 completion for {domain}", logger
        ):
            async with self._store.lock(domain):
                pending = self._store.get(domain)
                if pending is None or (owner is not None and pending.owner != owner):
                    raise NoPendingChallengeError(domain)

                with rate_limits():
                    await self._prepare_client(email)
                    order = await self._client.order_get(pending.order.url)
                    logger.info("Order of %s is %s", domain, order.status)

                    if order.status == acme.messages.STATUS_PENDING:
                        await self._validate(pending.challenge.uri)
                        order = await self._settle_and_finalize(order, pending)
                    elif order.status == acme.messages.STATUS_READY:
                        order = await self._client.order_finalize(order, pending.csr)
                    elif order.status == acme.messages.STATUS_INVALID:
                        raise ChallengeValidationError(
                            f"The order for {domain} is invalid: {order.error or 'no reason given'}"
                        )
                    # valid and processing orders only need the download

                    pem = await self._download(order)

                issued = self._persist(domain, pem, pending.private_key, "dns-01")
                self._store.remove(domain)
                return issued

    async def _prepare_client(self, email):
        async with self._client_lock:
            if not self._client.started:
                await self._client.start()

            if self._account_email is None:
                await self._client.account_register(email=email)
                self._account_email = email or ""
            elif email and email != self._account_email:
                logger.info("Updating the account contact to %s", email)
                await self._client.account_update(contact=(f"mailto:{email}",))
                self._account_email = email

    async def _generate_key_and_csr(self, domain):
        def generate():
            private_key = acmeportal.util.generate_rsa_key(key_size=self._cfg.key_size)
            return private_key, acmeportal.util.generate_csr(domain, private_key, [domain])

        return await asyncio.get_running_loop().run_in_executor(None, generate)

    async def _select_challenge(self, order, domain, chall_type):
        authorization = await self._client.authorization_get(order.authorizations[0])

        for challenge in authorization.challenges:
            if isinstance(challenge.chall, chall_type):
                return challenge

        raise ChallengeValidationError(
            f"The CA did not offer a {chall_type.typ} challenge for {domain}"
        )

    async def _wait_valid(self, challenge_url):
        try:
            return await self._client.challenge_wait_valid(
                challenge_url,
                delay=self._cfg.challenge_poll_delay,
                max_tries=self._cfg.challenge_poll_tries,
            )
        except CouldNotCompleteChallenge as e:
            raise ChallengeInvalidError(str(e)) from e
        except PollingException as e:
            raise ChallengeTimeoutError(
                f"Challenge validation timed out, the challenge is still {e.obj.status}"
            ) from e

    async def _validate_once(self, challenge_url):
        try:
            challenge = await self._client.challenge_get(challenge_url)
            if challenge.status == acme.messages.STATUS_VALID:
                logger.info("Challenge %s is valid already", challenge_url)
                return challenge

            if challenge.status == acme.messages.STATUS_PENDING:
                await self._client.challenge_validate(challenge_url)

            return await self._wait_valid(challenge_url)
        except acme.messages.Error as e:
            if e.code == "rateLimited":
                raise
            raise ChallengeValidationError(f"Challenge validation failed: {e}") from e

    async def _validate(self, challenge_url):
        try:
            return await self._validation_policy.run(
                self._validate_once,
                challenge_url,
                retry_on=(ChallengeValidationError, aiohttp.ClientError),
                name="Challenge validation",
            )
        except aiohttp.ClientError as e:
            raise ChallengeValidationError(
                f"Challenge validation failed: {e}"
            ) from e

    async def _settle_and_finalize(
        self, order: messages.Order, pending: PendingChallenge
    ) -> messages.Order:
        logger.debug("Waiting %.1fs before finalizing", self._cfg.settle_delay)
        await asyncio.sleep(self._cfg.settle_delay)
        return await self._client.order_finalize(order, pending.csr)

    async def _download_once(self, order_url):
        order = await self._client.order_get(order_url)
        if order.status == acme.messages.STATUS_INVALID:
            raise CertificateDownloadError(
                f"The order {order_url} became invalid: {order.error or 'no reason given'}"
            )
        return await self._client.certificate_get(order)

    async def _download(self, order: messages.Order) -> str:
        try:
            return await self._download_policy.run(
                self._download_once,
                order.url,
                retry_on=(CertificateNotReady, aiohttp.ClientError, acme.messages.Error),
                name="Certificate download",
            )
        except (CertificateNotReady, aiohttp.ClientError, acme.messages.Error) as e:
            if isinstance(e, acme.messages.Error) and e.code == "rateLimited":
                raise
            raise CertificateDownloadError(
                f"Failed to download the certificate after {self._download_policy.attempts} attempts: {e}"
            ) from e

    def _persist(
        self,
        domain: str,
        pem: str,
        private_key: rsa.RSAPrivateKey,
        challenge_type: str,
    ) -> IssuedCertificate:
        directory = Path(self._cfg.certificate_dir)
        directory.mkdir(parents=True, exist_ok=True)

        stem = f"{acmeportal.util.safe_filename(domain)}_{acmeportal.util.timestamp_ms()}"
        certificate_path = directory / f"{stem}.cert.pem"
        private_key_path = directory / f"{stem}.key.pem"

        key_pem = acmeportal.util.serialize_key(private_key)
        acmeportal.util.write_private(certificate_path, pem.encode())
        acmeportal.util.write_private(private_key_path, key_pem)
        logger.info("Stored the certificate of %s at %s", domain, certificate_path)

        return IssuedCertificate(
            certificate_path=certificate_path,
            private_key_path=private_key_path,
            certificate=pem,
            private_key=key_pem.decode(),
            not_after=acmeportal.util.not_after(pem),
            domain=domain,
            challenge_type=challenge_type,
        )
