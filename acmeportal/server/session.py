import asyncio
import contextlib
import dataclasses
import json
import logging
import re
import secrets
import time
import typing
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from aiohttp import web
from pydantic_settings import BaseSettings

import acmeportal.util

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"[A-Za-z0-9_-]{32,64}")

STAGE_PREPARING = "preparing"
STAGE_AWAITING_DNS = "awaiting_dns"
STAGE_VALIDATING = "validating"
STAGE_PROCESSING = "processing"


class FileSessionStorage:
    """Cookie sessions whose data lives in one JSON file per session.

    The cookie carries nothing but a random session id. A session expires *max_age* seconds after it
    was last saved; expired sessions are ignored on load and removed by :meth:`reaper`.
    """

    class Config(BaseSettings, extra="forbid"):
        directory: Path = Path("/tmp/acmeportal-sessions")
        """Where session and request state files are kept"""
        max_age: int = 86400
        """Seconds a session lives after its last use"""
        reap_interval: float = 3600.0
        """Seconds between two sweeps for expired sessions"""
        cookie_name: str = "ACMEPORTAL_SESSION"

    SUFFIX = ".session.json"

    def __init__(self, cfg: Config, secure: bool = False):
        self._cfg = cfg
        self._secure = secure
        self.directory = Path(cfg.directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    @property
    def cookie_name(self) -> str:
        return self._cfg.cookie_name

    @staticmethod
    def new_id() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def valid_id(session_id: typing.Optional[str]) -> bool:
        return bool(session_id) and SESSION_ID_RE.fullmatch(session_id) is not None

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}{self.SUFFIX}"

    def load(self, session_id: str) -> typing.Optional[dict]:
        """Returns the data of the given session, or *None* if it is unknown or expired."""
        if not self.valid_id(session_id):
            return None

        path = self._path(session_id)
        try:
            with open(path) as f:
                stored = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable session file %s", path)
            path.unlink(missing_ok=True)
            return None

        if stored.get("expires", 0) < time.time():
            logger.debug("Session %s… expired", session_id[:8])
            self.delete(session_id)
            return None

        return stored.get("data", {})

    def save(self, session_id: str, data: dict) -> None:
        with open(self._path(session_id), "w") as f:
            json.dump({"expires": time.time() + self._cfg.max_age, "data": data}, f)

    def delete(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)
        CertRequestStore.path_for(self.directory, session_id).unlink(missing_ok=True)

    def set_cookie(self, response: web.StreamResponse, session_id: str) -> None:
        response.set_cookie(
            self._cfg.cookie_name,
            session_id,
            max_age=self._cfg.max_age,
            path="/",
            httponly=True,
            samesite="Lax",
            secure=self._secure,
        )

    def reap(self) -> int:
        """Removes expired sessions and request state files that outlived their session.

        :return: The number of sessions removed.
        """
        now = time.time()
        removed = 0

        for path in self.directory.glob(f"*{self.SUFFIX}"):
            session_id = path.name[: -len(self.SUFFIX)]
            try:
                with open(path) as f:
                    expires = json.load(f).get("expires", 0)
            except (OSError, json.JSONDecodeError):
                expires = 0

            if expires < now:
                self.delete(session_id)
                removed += 1

        for path in self.directory.glob(f"*{CertRequestStore.SUFFIX}"):
            session_id = path.name[: -len(CertRequestStore.SUFFIX)]
            if (
                not self._path(session_id).exists()
                and path.stat().st_mtime + self._cfg.max_age < now
            ):
                path.unlink(missing_ok=True)

        if removed:
            logger.info("Removed %d expired sessions", removed)
        return removed

    async def reaper(self):
        """Sweeps for expired sessions every *reap_interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(self._cfg.reap_interval)
            try:
                self.reap()
            except OSError:
                logger.exception("Could not sweep the session directory")


@dataclass
class PendingCertRequest:
    request_id: str
    domain: str
    email: str
    method: typing.Literal["http", "dns"]
    request_time: int
    record_name: typing.Optional[str] = None
    record_value: typing.Optional[str] = None
    prepared: bool = False
    dns_verified: bool = False
    fallback: bool = False
    stage: str = STAGE_PREPARING


@dataclass
class CompletedCertificate:
    domain: str
    record_id: str


@dataclass
class CertificateError:
    message: str
    details: typing.List[str] = field(default_factory=list)
    domain: typing.Optional[str] = None


@dataclass
class CertRequestSession:
    """The certificate request state of one session.

    At most one request is pending. Submitting a new request replaces the pending one.
    A concluded request leaves either :attr:`completed` or :attr:`error` behind, which
    :meth:`consume_status` reports exactly once.

    Background tasks identify their request by *request_id*. Transitions for a request that
    has been superseded are dropped.
    """

    pending: typing.Optional[PendingCertRequest] = None
    completed: typing.Optional[CompletedCertificate] = None
    error: typing.Optional[CertificateError] = None

    @classmethod
    def from_json(cls, obj: dict) -> "CertRequestSession":
        return cls(
            pending=PendingCertRequest(**obj["pending"]) if obj.get("pending") else None,
            completed=CompletedCertificate(**obj["completed"])
            if obj.get("completed")
            else None,
            error=CertificateError(**obj["error"]) if obj.get("error") else None,
        )

    def to_json(self) -> dict:
        return dataclasses.asdict(self)

    def _current(self, request_id: str, transition: str) -> typing.Optional[PendingCertRequest]:
        if self.pending is None or self.pending.request_id != request_id:
            logger.info(
                "Dropping %s of superseded request %s", transition, request_id
            )
            return None
        return self.pending

    def submit(self, domain: str, email: str, method: str) -> PendingCertRequest:
        if self.pending is not None:
            logger.info(
                "Request %s for %s is superseded by a new request for %s",
                self.pending.request_id,
                self.pending.domain,
                domain,
            )

        self.pending = PendingCertRequest(
            request_id=uuid.uuid4().hex,
            domain=domain,
            email=email,
            method=method,
            request_time=int(time.time() * 1000),
            stage=STAGE_PREPARING if method == "dns" else STAGE_PROCESSING,
        )
        self.completed = None
        self.error = None
        return self.pending

    def mark_prepared(
        self, request_id: str, record_name: str, record_value: str, fallback: bool = False
    ) -> bool:
        if not (pending := self._current(request_id, "preparation")):
            return False

        pending.record_name = record_name
        pending.record_value = record_value
        pending.fallback = fallback
        pending.prepared = True
        pending.stage = STAGE_AWAITING_DNS
        return True

    def mark_dns_verified(self, request_id: str) -> bool:
        if not (pending := self._current(request_id, "DNS verification")):
            return False

        pending.dns_verified = True
        return True

    def mark_validating(self, request_id: str) -> bool:
        if not (pending := self._current(request_id, "validation")):
            return False

        pending.stage = STAGE_VALIDATING
        return True

    def complete(self, request_id: str, record_id: str) -> bool:
        if not (pending := self._current(request_id, "completion")):
            return False

        self.completed = CompletedCertificate(domain=pending.domain, record_id=record_id)
        self.pending = None
        return True

    def fail(self, request_id: str, message: str, details: typing.List[str]) -> bool:
        if not (pending := self._current(request_id, "failure")):
            return False

        self.error = CertificateError(message=message, details=details, domain=pending.domain)
        self.pending = None
        return True

    def consume_status(self) -> dict:
        """Reports the state for ``/status``. A concluded request is reported once and then forgotten."""
        if self.completed is not None:
            completed, self.completed = self.completed, None
            return {
                "status": "completed",
                "domain": completed.domain,
                "recordId": completed.record_id,
                "message": f"Certificate for {completed.domain} issued successfully",
            }

        if self.error is not None:
            error, self.error = self.error, None
            return {
                "status": "error",
                "domain": error.domain,
                "message": error.message,
                "details": error.details,
            }

        if self.pending is not None:
            status = {
                "status": "pending",
                "domain": self.pending.domain,
                "stage": self.pending.stage,
                "requestTime": self.pending.request_time,
            }
            if self.pending.prepared:
                status["dnsRecord"] = {
                    "name": self.pending.record_name,
                    "value": self.pending.record_value,
                }
            return status

        return {"status": "no_pending_requests"}

    def dns_challenge_status(self) -> dict:
        """Reports the preparation state of the pending DNS-01 request without consuming anything."""
        pending = self.pending
        if pending is not None and pending.method == "dns":
            if not pending.prepared:
                return {
                    "success": True,
                    "status": "preparing",
                    "message": f"Preparing the DNS challenge for {pending.domain}",
                }

            return {
                "success": True,
                "status": "ready",
                "dnsData": {
                    "domain": pending.domain,
                    "recordName": pending.record_name,
                    "recordValue": pending.record_value,
                },
            }

        if self.error is not None:
            return {
                "success": False,
                "status": "error",
                "message": self.error.message,
                "details": self.error.details,
            }

        return {
            "success": False,
            "status": "error",
            "message": "No pending DNS challenge found. Please start a new certificate request.",
        }


class CertRequestStore:
    """Persists :class:`CertRequestSession` objects, one JSON file per session id.

    Background tasks outlive the HTTP request that started them and write their transitions
    through :meth:`transaction`, which serializes access per session.
    """

    SUFFIX = ".request.json"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._locks = acmeportal.util.KeyedLock()

    @classmethod
    def path_for(cls, directory: Path, session_id: str) -> Path:
        return Path(directory) / f"{session_id}{cls.SUFFIX}"

    def _read(self, session_id: str) -> CertRequestSession:
        try:
            with open(self.path_for(self.directory, session_id)) as f:
                return CertRequestSession.from_json(json.load(f))
        except FileNotFoundError:
            return CertRequestSession()

    def _write(self, session_id: str, state: CertRequestSession):
        with open(self.path_for(self.directory, session_id), "w") as f:
            json.dump(state.to_json(), f, indent=2)

    async def load(self, session_id: str) -> CertRequestSession:
        """Returns a snapshot of the session's state. Changes to it are not persisted."""
        async with self._locks(session_id):
            return self._read(session_id)

    @contextlib.asynccontextmanager
    async def transaction(self, session_id: str):
        """Yields the session's state and writes it back if the block completes without error."""
        async with self._locks(session_id):
            state = self._read(session_id)
            yield state
            self._write(session_id, state)
