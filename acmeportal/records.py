import json
import logging
import typing
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pydantic

logger = logging.getLogger(__name__)


class CertificateRecord(pydantic.BaseModel):
    """An issued certificate as listed to its owner. Records are never changed after creation."""

    model_config = pydantic.ConfigDict(frozen=True)

    id: str
    user_id: str
    domain: str
    created_at: datetime
    expires_at: datetime
    certificate_path: str
    private_key_path: str
    verification_method: typing.Literal["http-01", "dns-01"]

    def serialize(self) -> dict:
        """The camelCase form used in HTTP responses."""
        return {
            "id": self.id,
            "domain": self.domain,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "verificationMethod": self.verification_method,
        }


class CertificateStore:
    """Append-only list of certificate records in ``<data_dir>/certificates.json``.

    Every write reads and rewrites the whole file without locking. Concurrent writers in
    different processes may lose records; within one process the event loop serializes writes.
    """

    FILENAME = "certificates.json"

    def __init__(self, data_dir: Path):
        self._path = Path(data_dir) / self.FILENAME
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            self._save([])

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> typing.List[CertificateRecord]:
        with open(self._path) as f:
            return [CertificateRecord.model_validate(obj) for obj in json.load(f)]

    def _save(self, records: typing.List[CertificateRecord]):
        with open(self._path, "w") as f:
            json.dump([record.model_dump(mode="json") for record in records], f, indent=2)

    def add(
        self,
        user_id: str,
        domain: str,
        certificate_path: Path,
        private_key_path: Path,
        verification_method: str,
        expires_at: datetime,
        created_at: datetime = None,
    ) -> CertificateRecord:
        """Appends a record for a newly issued certificate.

        :param expires_at: The certificate's *notAfter*.
        :return: The new record.
        """
        record = CertificateRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            domain=domain,
            created_at=created_at or datetime.now(timezone.utc),
            expires_at=expires_at,
            certificate_path=str(certificate_path),
            private_key_path=str(private_key_path),
            verification_method=verification_method,
        )

        records = self._load()
        records.append(record)
        self._save(records)

        logger.info("Recorded certificate %s for %s (user %s)", record.id, domain, user_id)
        return record

    def all(self) -> typing.List[CertificateRecord]:
        return self._load()

    def for_user(self, user_id: str) -> typing.List[CertificateRecord]:
        return [record for record in self._load() if record.user_id == user_id]

    def get(self, record_id: str) -> typing.Optional[CertificateRecord]:
        return next((record for record in self._load() if record.id == record_id), None)
