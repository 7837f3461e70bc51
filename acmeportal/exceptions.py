class PortalError(Exception):
    """Base class of all errors raised while issuing a certificate."""

    pass


class ValidationInputError(PortalError):
    """The request is missing or has malformed input (domain, email, challenge type).

    Correctable by the user and reported synchronously.
    """

    pass


class NoPendingChallengeError(PortalError):
    """There is no pending challenge for the domain, the flow has to be restarted."""

    def __init__(self, domain: str):
        super().__init__(f"No pending DNS challenge found for {domain}. Please start a new certificate request.")
        self.domain = domain


class DnsVerificationError(PortalError):
    """Base class for failed local DNS propagation checks."""

    def __init__(self, message: str, record_name: str, expected: str, found: list[str] = None):
        super().__init__(message)
        self.record_name = record_name
        self.expected = expected
        self.found = found or []


class DnsNotFoundError(DnsVerificationError):
    """No TXT record exists (yet) at the challenge name."""

    def __init__(self, record_name: str, expected: str):
        super().__init__(f"DNS record not found for {record_name}", record_name, expected)


class DnsMismatchError(DnsVerificationError):
    """TXT records exist at the challenge name but none carries the expected value."""

    def __init__(self, record_name: str, expected: str, found: list[str]):
        super().__init__(
            f"DNS record value doesn't match expected value. Expected: {expected}, found: {', '.join(found)}",
            record_name,
            expected,
            found,
        )


class ChallengeValidationError(PortalError):
    """The CA did not validate the challenge, also after retrying."""

    pass


class ChallengeTimeoutError(ChallengeValidationError):
    """The CA did not report a final challenge status in time."""

    pass


class ChallengeInvalidError(ChallengeValidationError):
    """The CA reported the challenge as invalid."""

    pass


class CertificateDownloadError(PortalError):
    """The order was finalized but the certificate could not be fetched."""

    pass


class RateLimitError(PortalError):
    """The CA throttles requests for this account or domain."""

    pass
