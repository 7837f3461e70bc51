import dns.exception
import pytest

from acmeportal.dns_checker import DnsPropagationChecker, matches, normalize, record_name
from acmeportal.exceptions import DnsMismatchError, DnsNotFoundError

NAME = "_acme-challenge.example.com"
VALUE = "gfj9Xq-Kxm2A7nDGjXDZMRtpjUmbPe5Ed3CjbxQUbVU"


def test_record_name():
    assert record_name("example.com") == NAME
    assert record_name("*.example.com") == NAME


@pytest.mark.parametrize(
    "raw, expected",
    [
        (VALUE, VALUE),
        (f'"{VALUE}"', VALUE),
        (f'  "{VALUE}" ', VALUE),
        (f'""{VALUE}""', f'"{VALUE}"'),
        ('"', '"'),
    ],
)
def test_normalize(raw, expected):
    assert normalize(raw) == expected


def test_matches_tolerates_quotes_on_either_side():
    assert matches(f'"{VALUE}"', VALUE)
    assert matches(VALUE, f'"{VALUE}"')
    assert matches(f" {VALUE}\n", VALUE)
    assert not matches(VALUE[:-1], VALUE)


@pytest.mark.asyncio
async def test_verify(checker, fake_dns):
    fake_dns.set_txt(NAME, "unrelated", VALUE)

    assert await checker.verify("example.com", VALUE) == ["unrelated", VALUE]
    assert fake_dns.queries == [NAME]


@pytest.mark.asyncio
async def test_verify_quoted_record(checker, fake_dns):
    fake_dns.set_txt(NAME, f'"{VALUE}"')

    await checker.verify("example.com", VALUE)


@pytest.mark.asyncio
async def test_verify_multi_string_record(checker, fake_dns):
    fake_dns.records[NAME] = [[VALUE[:20], VALUE[20:]]]

    await checker.verify("example.com", VALUE)


@pytest.mark.asyncio
async def test_not_found_after_retries(checker, fake_dns):
    with pytest.raises(DnsNotFoundError) as excinfo:
        await checker.verify("example.com", VALUE)

    assert str(excinfo.value) == f"DNS record not found for {NAME}"
    # first attempt plus two retries, each with a fresh resolver
    assert len(fake_dns.queries) == 3
    assert fake_dns.resolvers_built == 3


@pytest.mark.asyncio
async def test_mismatch_lists_found_values(checker, fake_dns):
    fake_dns.set_txt(NAME, "old-value")

    with pytest.raises(DnsMismatchError) as excinfo:
        await checker.verify("example.com", VALUE)

    assert "doesn't match expected value" in str(excinfo.value)
    assert "old-value" in str(excinfo.value)
    assert excinfo.value.found == ["old-value"]


@pytest.mark.asyncio
async def test_record_appearing_during_retries(dns_config, fake_dns):
    class Propagating:
        def __init__(self):
            self.attempts = 0

        def __call__(self):
            self.attempts += 1
            if self.attempts == 2:
                fake_dns.set_txt(NAME, VALUE)
            return fake_dns.factory()

    checker = DnsPropagationChecker(dns_config, resolver_factory=Propagating())
    await checker.verify("example.com", VALUE)
    assert len(fake_dns.queries) == 2


@pytest.mark.asyncio
async def test_timeouts_count_as_not_found(checker, fake_dns):
    fake_dns.records[NAME] = dns.exception.Timeout()

    with pytest.raises(DnsNotFoundError):
        await checker.verify("example.com", VALUE)


def test_nameservers_and_lifetime_are_applied():
    checker = DnsPropagationChecker(
        DnsPropagationChecker.Config(nameservers=["127.0.0.53"], lifetime=3.0)
    )
    resolver = checker._make_resolver()
    assert len(resolver.nameservers) == 1
    assert resolver.lifetime == 3.0
    assert checker._make_resolver() is not resolver
