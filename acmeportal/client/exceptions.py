import acme.messages


class AcmeClientException(Exception):
    """General ACME client exception."""

    pass


class CouldNotCompleteChallenge(AcmeClientException):
    """Exception that is raised if completion of a specific challenge failed."""

    def __init__(self, challenge, *args):
        super().__init__(*args)
        self.challenge: acme.messages.ChallengeBody = challenge
        """The challenge whose completion was unsuccessful."""

    def __str__(self):
        if self.challenge.error:
            return f"Could not complete challenge: {self.challenge.error}"
        return f"Could not complete challenge: {self.challenge.uri} is {self.challenge.status}"


class PollingException(AcmeClientException):
    """Exception that is used internally to communicate polling timeouts or errors."""

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class CertificateNotReady(AcmeClientException):
    """The order has no certificate URL yet, or the certificate cannot be fetched yet."""

    def __init__(self, order, *args):
        super().__init__(*args)
        self.order = order

    def __str__(self):
        return f"The certificate of order {self.order.url} is not available yet (status {self.order.status})"
