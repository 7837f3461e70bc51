import asyncio
import logging
import ssl
import typing
from pathlib import Path

import acme.messages
import josepy
from acme import jws
from aiohttp import ClientSession, ClientResponseError
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from pydantic import Field
from pydantic_settings import BaseSettings

import acmeportal.util
from acmeportal.client import messages
from acmeportal.client.exceptions import (
    CertificateNotReady,
    CouldNotCompleteChallenge,
    PollingException,
)
from acmeportal.version import __version__

logger = logging.getLogger(__name__)

LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

# acme does not know 'expired', authorizations may end up in it
STATUS_EXPIRED = acme.messages.Status("expired")


def is_valid(obj):
    return obj.status == acme.messages.STATUS_VALID


def is_invalid(obj):
    return obj.status in [acme.messages.STATUS_INVALID, STATUS_EXPIRED]


class AcmeClient:
    """ACME compliant client.

    A thin asyncio wrapper around the message types of the :mod:`acme` library. It only knows the
    individual protocol steps; sequencing them, retrying and waiting between them is left to the
    :class:`~acmeportal.orchestrator.ChallengeOrchestrator`.
    """

    FINALIZE_DELAY = 3.0
    """The delay in seconds between finalization attemps."""
    FINALIZE_RETRIES = 5
    """The number of times finalization is retried while the CA answers *orderNotReady*."""
    INVALID_NONCE_RETRIES = 5
    """The number of times the client should retry when the server returns the error *badNonce*."""

    class Config(BaseSettings, extra="forbid"):
        directory: str = LETSENCRYPT_STAGING
        """The ACME server's directory URL"""
        private_key: Path = Path("certificates/account.key.pem")
        """PEM-encoded RSA or EC account key, an RSA key is generated if the file does not exist"""
        contact: dict[str, str] = Field(default_factory=dict)
        """Contact info used on registration if the request does not carry an email"""
        server_cert: str = ""
        """Additional CA certificate to trust, for test CAs"""

    def __init__(self, cfg: Config):
        """Creates an :class:`AcmeClient` instance.

        The HTTP session is opened in :meth:`start`.

        :param cfg: The client configuration.
        """
        self._ssl_context = ssl.create_default_context()

        if cfg.server_cert:
            # Add our self-signed server cert for testing purposes.
            self._ssl_context.load_verify_locations(cafile=cfg.server_cert)

        self._session: typing.Optional[ClientSession] = None
        self._directory_url = cfg.directory

        self._private_key, self._alg = self._open_key(Path(cfg.private_key))
        # Filter empty strings
        self._contact = {k: v for k, v in cfg.contact.items() if len(v) > 0}

        self._directory = dict()
        self._nonces = set()
        self._account = None

    @property
    def account_key(self) -> josepy.jwk.JWK:
        """The account key, needed to compute key authorizations."""
        return self._private_key

    @property
    def directory_url(self) -> str:
        return self._directory_url

    @property
    def started(self) -> bool:
        return bool(self._directory)

    def _open_key(self, private_key: Path):
        if not private_key.exists():
            logger.info("Generating a new account key at %s", private_key)
            acmeportal.util.generate_rsa_key(private_key)

        with open(private_key, "rb") as pem:
            data = pem.read()
            keys = acmeportal.util.pem_split(data.decode())
            if len(keys) != 1:
                raise ValueError(f"Bad Private Key in file {private_key}")
            if isinstance(keys[0], rsa.RSAPrivateKey):
                key = josepy.jwk.JWKRSA.load(data)
                alg = josepy.jwa.RS256
            elif isinstance(keys[0], ec.EllipticCurvePrivateKey):
                key = josepy.jwk.JWKEC.load(data)
                alg = {
                    521: josepy.jwa.ES512,
                    256: josepy.jwa.ES256,
                    384: josepy.jwa.ES384,
                }[keys[0].curve.key_size]
            else:
                raise ValueError(f"Bad Private Key in file {private_key}")
            return key, alg

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        if self._session:
            await self._session.close()
            self._session = None

    async def start(self):
        """Starts the client's session and fetches the ACME directory.

        This method must be called before making requests to the CA.
        """
        if self._session is None:
            self._session = ClientSession(
                headers={"User-Agent": f"acmeportal Client {__version__}"}
            )

        async with self._session.get(
            self._directory_url, ssl=self._ssl_context
        ) as resp:
            resp.raise_for_status()
            self._directory = await resp.json()

    async def account_register(self, email: str = None, phone: str = None) -> None:
        """Registers an account with the CA.

        If the private key is already registered, then the CA returns the existing account.
        The account is stored internally for subsequent requests.

        :param email: The contact email
        :param phone: The contact phone number
        :raises: :class:`acme.messages.Error` If the server rejects the contact information or the key.
        """
        reg = acme.messages.Registration.from_data(
            email=email or self._contact.get("email"),
            phone=phone or self._contact.get("phone"),
            terms_of_service_agreed=True,
        )

        # the JWK has to be sent instead of a kid
        self._account = None
        resp, account_obj = await self._signed_request(
            reg, self._directory["newAccount"]
        )
        account_obj["kid"] = resp.headers["Location"]
        self._account = messages.Account.from_json(account_obj)

    async def account_update(self, **kwargs) -> None:
        """Updates the account's contact information.

        :param kwargs: Kwargs that are passed to :class:`acme.messages.Registration`'s constructor.
            May be used to update the contact information, e.g. ``contact=("mailto:admin@example.com",)``.
        :raises: :class:`acme.messages.Error` If the server rejects the update.
        """
        kid = self._account["kid"]
        reg = acme.messages.Registration(**kwargs)
        _, account_obj = await self._signed_request(reg, kid)
        account_obj["kid"] = kid
        self._account = messages.Account.from_json(account_obj)

    async def order_create(
        self, identifiers: typing.Union[typing.List[dict], typing.List[str]]
    ) -> messages.Order:
        """Creates a new order with the given identifiers.

        :param identifiers: :class:`list` of identifiers that the order should contain.
        :raises: :class:`acme.messages.Error` If the server is unwilling to create an order with the requested
            identifiers.
        :returns: The new order.
        """
        order = messages.NewOrder.from_data(identifiers=identifiers)

        resp, order_obj = await self._signed_request(order, self._directory["newOrder"])
        order_obj["url"] = resp.headers["Location"]
        return messages.Order.from_json(order_obj)

    async def order_finalize(
        self, order: messages.Order, csr: "cryptography.x509.CertificateSigningRequest"
    ) -> messages.Order:
        """Submits the CSR to the order's *finalize* URL.

        Retries up to :attr:`FINALIZE_RETRIES` times while the CA answers *orderNotReady*.
        The returned order is usually still *processing*, polling for the certificate is up
        to the caller.

        :param order: Order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises: :class:`acme.messages.Error` If the server is unwilling to finalize the order.
        :returns: The order as returned by the CA.
        """
        cert_req = messages.CertificateRequest(csr=csr)

        tries = self.FINALIZE_RETRIES
        while True:
            try:
                resp, order_obj = await self._signed_request(cert_req, order.finalize)
                break
            except acme.messages.Error as e:
                # Make sure that the order is in state READY before moving on.
                if e.code == "orderNotReady" and tries > 0:
                    tries -= 1
                    await asyncio.sleep(self.FINALIZE_DELAY)
                else:
                    raise e

        order_obj["url"] = resp.headers.get("Location", order.url)
        return messages.Order.from_json(order_obj)

    async def order_get(self, order_url: str) -> messages.Order:
        """Fetches an order given its URL.

        :param order_url: The order's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the order does not exist.
        :return: The fetched order.
        """
        resp, order = await self._signed_request(None, order_url)
        order["url"] = order_url
        return messages.Order.from_json(order)

    async def authorization_get(
        self, authorization_url: str
    ) -> acme.messages.Authorization:
        """Fetches an authorization given its URL.

        :param authorization_url: The authorization's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the authorization does not exist.
        :return: The fetched authorization.
        """
        resp, authorization = await self._signed_request(None, authorization_url)
        return acme.messages.Authorization.from_json(authorization)

    async def challenge_get(self, challenge_url: str) -> acme.messages.ChallengeBody:
        """Fetches a challenge given its URL.

        :param challenge_url: The challenge's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the challenge does not exist.
        :return: The fetched challenge.
        """
        _, challenge_obj = await self._signed_request(None, challenge_url)
        return acme.messages.ChallengeBody.from_json(challenge_obj)

    async def challenge_validate(self, challenge_url: str) -> None:
        """Initiates the given challenge's validation.

        :param challenge_url: The challenge's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the challenge does not exist.
        """
        await self._signed_request(None, challenge_url, post_as_get=False)

    async def challenge_wait_valid(
        self, challenge_url: str, delay: float = 5.0, max_tries: int = 24
    ) -> acme.messages.ChallengeBody:
        """Polls the given challenge until the CA reports it as valid.

        :param challenge_url: The challenge's URL.
        :param delay: Seconds between two polls.
        :param max_tries: Number of polls after the first one.
        :raises:

            * :class:`CouldNotCompleteChallenge` If the CA reports the challenge as invalid.
            * :class:`PollingException` If the challenge did not reach a final status in time.

        :return: The valid challenge.
        """
        try:
            return await self._poll_until(
                self.challenge_get,
                challenge_url,
                predicate=is_valid,
                negative_predicate=is_invalid,
                delay=delay,
                max_tries=max_tries,
            )
        except PollingException as e:
            if is_invalid(e.obj):
                raise CouldNotCompleteChallenge(e.obj)
            raise

    async def certificate_get(self, order: acme.messages.Order) -> str:
        """Downloads the given order's certificate.

        :param order: The order whose certificate to download.
        :raises:

            * :class:`aiohttp.ClientResponseError` If the certificate does not exist.
            * :class:`CertificateNotReady` If the order has not been finalized yet, i.e. the certificate \
                property is *None*.

        :return: The order's certificate encoded as PEM.
        """
        if not order.certificate:
            raise CertificateNotReady(order)

        _, pem = await self._signed_request(None, order.certificate)

        return pem

    async def _poll_until(
        self,
        coro,
        *args,
        predicate=None,
        negative_predicate=None,
        delay=3.0,
        max_tries=5,
        **kwargs,
    ):
        tries = max_tries
        result = await coro(*args, **kwargs)
        while tries > 0:
            logger.debug(
                "Polling %s%s, tries remaining: %d", coro.__name__, args, tries - 1
            )
            if predicate(result):
                break

            if negative_predicate and negative_predicate(result):
                raise PollingException(
                    result,
                    f"Polling unsuccessful: {coro.__name__}{args}, {negative_predicate.__name__} became True",
                )

            await asyncio.sleep(delay)
            result = await coro(*args, **kwargs)
            tries -= 1
        else:
            if not predicate(result):
                if negative_predicate and negative_predicate(result):
                    raise PollingException(
                        result,
                        f"Polling unsuccessful: {coro.__name__}{args}, {negative_predicate.__name__} became True",
                    )
                raise PollingException(
                    result, f"Polling unsuccessful: {coro.__name__}{args}"
                )

        return result

    async def _get_nonce(self):
        async def fetch_nonce():
            try:
                async with self._session.head(
                    self._directory["newNonce"], ssl=self._ssl_context
                ) as resp:
                    logger.debug("Storing new nonce %s", resp.headers["Replay-Nonce"])
                    return resp.headers["Replay-Nonce"]
            except Exception as e:
                logger.warning("Could not fetch a nonce: %s", e)

        try:
            return self._nonces.pop()
        except KeyError:
            return await self._poll_until(fetch_nonce, predicate=lambda x: x, delay=5.0)

    def _wrap_in_jws(
        self, obj: typing.Optional[josepy.JSONDeSerializable], nonce, url, post_as_get
    ):
        if post_as_get:
            jobj = obj.json_dumps(indent=2).encode() if obj else b""
        else:
            jobj = b"{}"
        kwargs = {"nonce": josepy.b64.b64decode(nonce), "url": url}
        if self._account is not None:
            kwargs["kid"] = self._account["kid"]
        return jws.JWS.sign(
            jobj, key=self._private_key, alg=self._alg, **kwargs
        ).json_dumps(indent=2)

    async def _signed_request(
        self, obj: typing.Optional[josepy.JSONDeSerializable], url, post_as_get=True
    ):
        tries = self.INVALID_NONCE_RETRIES
        while tries > 0:
            try:
                payload = self._wrap_in_jws(
                    obj, await self._get_nonce(), url, post_as_get
                )
                return await self._make_request(payload, url)
            except acme.messages.Error as e:
                if e.code == "badNonce" and tries > 1:
                    tries -= 1
                    continue
                raise e

    async def _make_request(self, payload, url):
        async with self._session.post(
            url,
            data=payload,
            headers={"Content-Type": "application/jose+json"},
            ssl=self._ssl_context,
        ) as resp:
            if "Replay-Nonce" in resp.headers:
                self._nonces.add(resp.headers["Replay-Nonce"])

            if 200 <= resp.status < 300 and resp.content_type == "application/json":
                data = await resp.json()
            elif resp.content_type == "application/problem+json":
                raise acme.messages.Error.from_json(await resp.json())
            elif resp.status < 200 or resp.status >= 300:
                raise ClientResponseError(
                    resp.request_info, resp.history, status=resp.status
                )
            else:
                data = await resp.text()

            logger.debug(data)
            return resp, data
