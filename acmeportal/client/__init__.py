from .client import AcmeClient
from .exceptions import (
    AcmeClientException,
    CertificateNotReady,
    CouldNotCompleteChallenge,
    PollingException,
)

__all__ = [
    "AcmeClient",
    "AcmeClientException",
    "CertificateNotReady",
    "CouldNotCompleteChallenge",
    "PollingException",
]
