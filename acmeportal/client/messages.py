import typing

import acme.messages
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization


def encode_csr(csr):
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der):
    return x509.load_der_x509_csr(josepy.json_util.decode_b64jose(b64der))


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for certificate requests.

    Sent to the CA's *finalize* URL by :meth:`~acmeportal.client.AcmeClient.order_finalize`.
    """

    csr: "cryptography.x509.CertificateSigningRequest" = josepy.Field(
        "csr", decoder=decode_csr, encoder=encode_csr
    )
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field(
        "identifiers", omitempty=True
    )
    """The requested identifiers."""

    @classmethod
    def from_data(
        cls,
        identifiers: typing.Union[
            typing.List[typing.Dict[str, str]], typing.List[str]
        ] = None,
    ) -> "NewOrder":
        """Class factory that takes care of parsing the list of *identifiers*.

        :param identifiers: Either a :class:`list` of :class:`dict` where each dict consists of the keys *type* \
            and *value*, or a :class:`list` of :class:`str` that represent the DNS names.
        :return: The new order object.
        """
        if type(identifiers[0]) is dict:
            return cls(identifiers=identifiers)
        elif type(identifiers[0]) is str:
            return cls(
                identifiers=[
                    dict(type="dns", value=identifier) for identifier in identifiers
                ]
            )

        raise ValueError(
            "Could not decode identifiers list. Must be either List(str) or List(dict) where "
            "the dict has two keys 'type' and 'value'"
        )


class Account(josepy.JSONObjectWithFields):
    """The account as seen by the :class:`~acmeportal.client.AcmeClient`.

    The :attr:`kid` field is copied from the *Location* header of the registration response and
    sent to the CA with every subsequent request.
    """

    status: str = josepy.Field("status", omitempty=True)
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    """The account's contact info."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""
    kid: str = josepy.Field("kid")
    """The account's key ID."""


class Order(acme.messages.Order):
    """Patched :class:`acme.messages.Order` message type that adds a *URL* field.

    The *URL* field is populated by copying the *Location* header from responses in the
    :class:`~acmeportal.client.AcmeClient`. The orchestrator uses it to re-read the order's
    status at the CA between the steps of a challenge.
    """

    url: str = josepy.Field("url", omitempty=True)
    """The order's URL at the CA."""
