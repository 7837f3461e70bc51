import asyncio
import json
import logging
import typing
import uuid
from pathlib import Path

from aiohttp import web
from aiohttp.web_middlewares import middleware
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeportal.challenge_store import ChallengeStore
from acmeportal.client import AcmeClient
from acmeportal.client.client import LETSENCRYPT_PRODUCTION
from acmeportal.dns_checker import DnsPropagationChecker, record_name
from acmeportal.exceptions import DnsVerificationError, ValidationInputError
from acmeportal.orchestrator import ChallengeOrchestrator, IssuedCertificate
from acmeportal.records import CertificateStore
from acmeportal.server.errors import GENERIC_DETAIL, describe_error
from acmeportal.server.routes import routes
from acmeportal.server.session import (
    CertRequestStore,
    FileSessionStorage,
    PendingCertRequest,
)
from acmeportal.version import __version__

logger = logging.getLogger(__name__)

SessionIdKey = web.RequestKey("session_id", str)
SessionKey = web.RequestKey("session", dict)

CHALLENGE_TYPES = ("http", "dns")


class AcmePortal:
    """Web application that obtains certificates for its users.

    Issuance runs in background tasks that are tracked by the application and cancelled on cleanup.
    Handlers only start them and return *202*, progress is polled via ``/status`` and
    ``/dns-challenge-status``.
    """

    class Config(BaseSettings, extra="forbid", env_prefix="ACMEPORTAL_"):
        hostname: str = "localhost"
        """hostname of the server - e.g. 0.0.0.0 or localhost"""
        port: int = 3001
        """port to bind to"""
        path: str = ""
        """unix domain socket - exclusive with host,port"""
        production: bool = False
        """Use secure cookies, hide error messages and never hand out fallback challenge values.
        Also switches to the production directory of Let's Encrypt unless *client.directory* is set."""
        data_dir: Path = Path("data")
        """Where the certificate records are kept"""
        certificate_dir: Path = Path("certificates")
        """Where issued certificates and their keys are written"""
        session: FileSessionStorage.Config = Field(default_factory=FileSessionStorage.Config)
        client: AcmeClient.Config = Field(default_factory=AcmeClient.Config)
        dns: DnsPropagationChecker.Config = Field(default_factory=DnsPropagationChecker.Config)
        orchestrator: ChallengeOrchestrator.Config = Field(
            default_factory=ChallengeOrchestrator.Config
        )

    def __init__(
        self,
        cfg: Config,
        client: AcmeClient = None,
        resolver_factory=None,
    ):
        self._cfg = cfg

        self._client = client or AcmeClient(self._client_config(cfg))
        self._checker = DnsPropagationChecker(cfg.dns, resolver_factory=resolver_factory)
        self._orchestrator = ChallengeOrchestrator(
            cfg.orchestrator.model_copy(
                update={
                    "production": cfg.production,
                    "certificate_dir": cfg.certificate_dir,
                }
            ),
            self._client,
            ChallengeStore(),
            self._checker,
        )

        self._sessions = FileSessionStorage(cfg.session, secure=cfg.production)
        self._requests = CertRequestStore(self._sessions.directory)
        self._certificates = CertificateStore(cfg.data_dir)

        self._tasks: typing.Set[asyncio.Task] = set()
        self._reaper: typing.Optional[asyncio.Task] = None

        self.app = web.Application(
            middlewares=[self.session_middleware, self.error_middleware]
        )
        self._add_routes()

    @staticmethod
    def _client_config(cfg: Config) -> AcmeClient.Config:
        if cfg.production and "directory" not in cfg.client.model_fields_set:
            return cfg.client.model_copy(update={"directory": LETSENCRYPT_PRODUCTION})
        return cfg.client

    @property
    def orchestrator(self) -> ChallengeOrchestrator:
        return self._orchestrator

    @property
    def certificates(self) -> CertificateStore:
        return self._certificates

    @property
    def requests(self) -> CertRequestStore:
        return self._requests

    @property
    def tasks(self) -> typing.Set[asyncio.Task]:
        """The background tasks that have not finished yet."""
        return self._tasks

    async def on_startup(self, app: web.Application):
        self._reaper = asyncio.create_task(self._sessions.reaper())

    async def on_cleanup(self, app: web.Application):
        tasks = [*self._tasks, *([self._reaper] if self._reaper else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._client.close()

    def _add_routes(self):
        specific_routes = []

        for route_def in routes:
            specific_routes.append(
                web.RouteDef(
                    route_def.method,
                    route_def.path,
                    getattr(self, route_def.handler.__name__),
                    route_def.kwargs.copy(),
                )
            )

        self.app.add_routes(specific_routes)

    @classmethod
    async def create_app(cls, config: Config, **kwargs) -> "AcmePortal":
        """Creates the portal and hooks it into its application's lifecycle.

        :param config: The portal configuration.
        :param kwargs: Passed on to the constructor.
        :return: The portal instance
        """
        instance = cls(config, **kwargs)
        instance.app[AcmePortal.PortalKey] = instance
        instance.app.on_startup.append(instance.on_startup)
        instance.app.on_cleanup.append(instance.on_cleanup)
        return instance

    @classmethod
    async def runner(
        cls, config: Config, **kwargs
    ) -> tuple["web.AppRunner", "AcmePortal"]:
        """Starts the portal on the configured hostname and port, or unix socket, using an AppRunner.

        :param config: The portal configuration.
        :param kwargs: Passed on to :meth:`create_app`.
        :return: A tuple containing the app runner as well as the portal instance.
        """
        instance = await cls.create_app(config, **kwargs)

        runner = web.AppRunner(instance.app)
        await runner.setup()

        if config.hostname and config.port:
            site = web.TCPSite(runner, config.hostname, config.port)
        elif config.path:
            site = web.UnixSite(runner, config.path)
        else:
            raise ValueError("Either hostname and port or path have to be configured")
        await site.start()

        logger.info("acmeportal %s listening on %s", __version__, site.name)
        return runner, instance

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _json_body(request: web.Request) -> dict:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise ValidationInputError("The request body must be a JSON object")

        if not isinstance(data, dict):
            raise ValidationInputError("The request body must be a JSON object")
        return data

    @staticmethod
    def _session_id(request: web.Request) -> str:
        return request[SessionIdKey]

    @staticmethod
    def _user_id(request: web.Request) -> str:
        return request[SessionKey]["user"]["id"]

    @routes.post("/generate", name="generate")
    async def generate(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)

        domain = str(data.get("domain") or "").strip().lower()
        email = str(data.get("email") or "").strip()
        challenge_type = data.get("challengeType") or "http"

        if not domain or not email:
            raise ValidationInputError("Domain and email are required")
        if challenge_type not in CHALLENGE_TYPES:
            raise ValidationInputError(
                f"Unknown challenge type '{challenge_type}', use one of {', '.join(CHALLENGE_TYPES)}"
            )

        session_id = self._session_id(request)
        async with self._requests.transaction(session_id) as state:
            previous = state.pending
            pending = state.submit(domain, email, challenge_type)

        if previous is not None and previous.method == "dns":
            self._spawn(
                self._orchestrator.abandon(previous.domain, owner=previous.request_id)
            )

        if challenge_type == "dns":
            self._spawn(self._prepare_dns(session_id, pending))
            message = "Preparing the DNS challenge. Poll /dns-challenge-status for the record to create."
        else:
            self._spawn(
                self._issue_http(session_id, self._user_id(request), pending)
            )
            message = "Certificate generation started. This may take a few minutes."

        return web.json_response(
            {"success": True, "status": "processing", "message": message},
            status=202,
        )

    @routes.get("/dns-challenge-status", name="dns-challenge-status")
    async def dns_challenge_status(self, request: web.Request) -> web.Response:
        state = await self._requests.load(self._session_id(request))
        return web.json_response(state.dns_challenge_status())

    @routes.post("/check-dns", name="check-dns")
    async def check_dns(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        session_id = self._session_id(request)

        pending = (await self._requests.load(session_id)).pending
        if pending is not None and not (pending.method == "dns" and pending.prepared):
            pending = None

        domain = str(data.get("domain") or "").strip().lower()
        record_value = data.get("recordValue")

        if not record_value:
            if pending is None:
                return web.json_response(
                    {
                        "success": False,
                        "message": "No DNS challenge information found. Please start a new certificate request.",
                    },
                    status=400,
                )
            if domain and domain != pending.domain:
                return web.json_response(
                    {"success": False, "message": "Domain mismatch with pending request"},
                    status=400,
                )
            domain = pending.domain
            record_value = pending.record_value

        if not domain:
            raise ValidationInputError("Domain is required")

        try:
            await self._checker.verify(domain, record_value)
        except DnsVerificationError as e:
            logger.info("DNS check failed: %s", e)
            _, details = describe_error(e, record_name(domain), record_value)
            return web.json_response(
                {
                    "success": False,
                    "message": "DNS verification failed",
                    "details": details,
                    "error": str(e),
                },
                status=400,
            )

        if (
            pending is not None
            and pending.domain == domain
            and record_value == pending.record_value
        ):
            async with self._requests.transaction(session_id) as state:
                state.mark_dns_verified(pending.request_id)

        return web.json_response(
            {
                "success": True,
                "message": "DNS record verified successfully",
                "domain": domain,
            }
        )

    @routes.post("/verify-dns", name="verify-dns")
    async def verify_dns(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        session_id = self._session_id(request)

        async with self._requests.transaction(session_id) as state:
            pending = state.pending
            if pending is None or pending.method != "dns" or not pending.prepared:
                return web.json_response(
                    {
                        "success": False,
                        "error": "No pending DNS certificate request found",
                        "message": "Please start a new certificate request",
                    },
                    status=400,
                )

            domain = str(data.get("domain") or "").strip().lower()
            if domain and domain != pending.domain:
                return web.json_response(
                    {"success": False, "message": "Domain mismatch with pending request"},
                    status=400,
                )

            state.mark_validating(pending.request_id)

        use_verified = bool(data.get("useVerifiedChallenge", pending.dns_verified))
        self._spawn(
            self._complete_dns(
                session_id, self._user_id(request), pending, use_verified
            )
        )

        return web.json_response(
            {
                "success": True,
                "status": "processing",
                "message": "Verification and certificate generation started. This may take a few minutes.",
            },
            status=202,
        )

    @routes.get("/status", name="status")
    async def status(self, request: web.Request) -> web.Response:
        async with self._requests.transaction(self._session_id(request)) as state:
            return web.json_response(state.consume_status())

    @routes.get("/.well-known/acme-challenge/{token}", name="acme-challenge")
    async def acme_challenge(self, request: web.Request) -> web.Response:
        key_authorization = self._orchestrator.key_authorization_for(
            request.match_info["token"]
        )

        if key_authorization is None:
            return web.Response(status=404, text="Not found")

        return web.Response(text=key_authorization, content_type="text/plain")

    def _owned_record(self, request: web.Request):
        record = self._certificates.get(request.match_info["id"])
        if record is None or record.user_id != self._user_id(request):
            return None
        return record

    @routes.get("/certificates", name="certificates")
    async def list_certificates(self, request: web.Request) -> web.Response:
        records = self._certificates.for_user(self._user_id(request))
        return web.json_response(
            {"certificates": [record.serialize() for record in records]}
        )

    @routes.get("/certificates/{id}", name="certificate")
    async def show_certificate(self, request: web.Request) -> web.Response:
        if (record := self._owned_record(request)) is None:
            return web.json_response({"error": "Certificate not found"}, status=404)

        return web.json_response(record.serialize())

    @routes.get("/certificates/{id}/download/{type}", name="download")
    async def download_certificate(self, request: web.Request) -> web.StreamResponse:
        if (record := self._owned_record(request)) is None:
            return web.json_response({"error": "Certificate not found"}, status=404)

        type_ = request.match_info["type"]
        if type_ == "cert":
            path, filename = record.certificate_path, f"{record.domain}_certificate.pem"
        elif type_ == "key":
            path, filename = record.private_key_path, f"{record.domain}_privatekey.pem"
        else:
            return web.json_response({"error": "Invalid download type"}, status=400)

        if not Path(path).exists():
            logger.warning("File %s of certificate %s is missing", path, record.id)
            return web.json_response({"error": "Certificate not found"}, status=404)

        return web.FileResponse(
            path,
            headers={
                "Content-Type": "application/x-pem-file",
                "Content-Disposition": f'attachment; filename="{filename}"',
            },
        )

    async def _record(
        self, session_id: str, user_id: str, pending: PendingCertRequest, issued: IssuedCertificate
    ):
        record = self._certificates.add(
            user_id,
            pending.domain,
            issued.certificate_path,
            issued.private_key_path,
            issued.challenge_type,
            issued.not_after,
        )
        async with self._requests.transaction(session_id) as state:
            state.complete(pending.request_id, record.id)

    async def _fail(self, session_id: str, pending: PendingCertRequest, error: Exception):
        message, details = describe_error(error, pending.record_name, pending.record_value)
        async with self._requests.transaction(session_id) as state:
            state.fail(pending.request_id, message, details)

    async def _issue_http(self, session_id: str, user_id: str, pending: PendingCertRequest):
        async def on_ready():
            logger.info("HTTP-01 challenge response for %s is published", pending.domain)
            async with self._requests.transaction(session_id) as state:
                state.mark_validating(pending.request_id)

        try:
            issued = await self._orchestrator.begin_http_challenge(
                pending.domain, pending.email, on_ready=on_ready
            )
            await self._record(session_id, user_id, pending, issued)
        except Exception as e:
            logger.exception("Certificate generation for %s failed", pending.domain)
            await self._fail(session_id, pending, e)

    async def _prepare_dns(self, session_id: str, pending: PendingCertRequest):
        try:
            record = await self._orchestrator.begin_dns_challenge(
                pending.domain, pending.email, owner=pending.request_id
            )
        except Exception as e:
            logger.exception("Preparing the DNS challenge for %s failed", pending.domain)
            await self._fail(session_id, pending, e)
            return

        async with self._requests.transaction(session_id) as state:
            current = state.mark_prepared(
                pending.request_id, record.name, record.value, record.fallback
            )

        if not current and not record.fallback:
            await self._orchestrator.abandon(pending.domain, owner=pending.request_id)

    async def _complete_dns(
        self,
        session_id: str,
        user_id: str,
        pending: PendingCertRequest,
        use_verified: bool,
    ):
        try:
            if use_verified:
                issued = await self._orchestrator.complete_verified_dns_challenge(
                    pending.domain, pending.email, owner=pending.request_id
                )
            else:
                issued = await self._orchestrator.complete_dns_challenge(
                    pending.domain, owner=pending.request_id
                )
            await self._record(session_id, user_id, pending, issued)
        except Exception as e:
            logger.exception("DNS verification for %s failed", pending.domain)
            await self._fail(session_id, pending, e)

    @middleware
    async def session_middleware(self, request: web.Request, handler):
        """Middleware that attaches the session to the request and refreshes its cookie.

        Every new session is assigned an anonymous user id which owns the certificates
        issued in it.
        """
        session_id = request.cookies.get(self._sessions.cookie_name)
        session = self._sessions.load(session_id)

        if session is None:
            session_id = self._sessions.new_id()
            session = {}

        session.setdefault("user", {"id": uuid.uuid4().hex})
        self._sessions.save(session_id, session)

        request[SessionIdKey] = session_id
        request[SessionKey] = session

        response = await handler(request)
        self._sessions.set_cookie(response, session_id)
        return response

    @middleware
    async def error_middleware(self, request: web.Request, handler):
        """Middleware that converts errors thrown in handlers to JSON.

        :returns: *400* for invalid input, *500* for anything unexpected.
        """
        try:
            response = await handler(request)
        except ValidationInputError as error:
            return web.json_response(
                {"success": False, "error": str(error), "message": str(error)},
                status=400,
            )
        except web.HTTPException as error:
            raise error from None
        except Exception as unexpected_error:
            logger.exception(unexpected_error)
            message = (
                GENERIC_DETAIL if self._cfg.production else str(unexpected_error)
            )
            return web.json_response(
                {"success": False, "error": "Internal server error", "message": message},
                status=500,
            )
        else:
            return response


AcmePortal.PortalKey = web.AppKey("Portal", AcmePortal)
