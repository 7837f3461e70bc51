from .server import AcmePortal
from .session import (
    CertRequestSession,
    CertRequestStore,
    FileSessionStorage,
    PendingCertRequest,
)

__all__ = [
    "AcmePortal",
    "CertRequestSession",
    "CertRequestStore",
    "FileSessionStorage",
    "PendingCertRequest",
]
