import logging

import aiohttp
import pytest
import pytest_asyncio

from acmeportal.challenge_store import ChallengeStore
from acmeportal.dns_checker import DnsPropagationChecker
from acmeportal.orchestrator import ChallengeOrchestrator
from acmeportal.server import AcmePortal, FileSessionStorage
from .fakes import FakeAcmeClient, FakeDns

logging.getLogger("acmeportal").setLevel(logging.DEBUG)


@pytest.fixture
def fake_ca():
    return FakeAcmeClient()


@pytest.fixture
def fake_dns():
    return FakeDns()


@pytest.fixture
def dns_config():
    return DnsPropagationChecker.Config(retries=2, delay=0)


@pytest.fixture
def checker(dns_config, fake_dns):
    return DnsPropagationChecker(dns_config, resolver_factory=fake_dns.factory)


@pytest.fixture
def orchestrator_config(tmp_path):
    return ChallengeOrchestrator.Config(
        validation_delays=[0, 0],
        challenge_poll_delay=0,
        challenge_poll_tries=1,
        settle_delay=0,
        download_retries=4,
        download_backoff=0,
        certificate_dir=tmp_path / "certificates",
    )


@pytest.fixture
def orchestrator(orchestrator_config, fake_ca, checker):
    return ChallengeOrchestrator(orchestrator_config, fake_ca, ChallengeStore(), checker)


@pytest.fixture
def portal_config(tmp_path, unused_tcp_port_factory, dns_config, orchestrator_config):
    return AcmePortal.Config(
        hostname="127.0.0.1",
        port=unused_tcp_port_factory(),
        data_dir=tmp_path / "data",
        certificate_dir=tmp_path / "certificates",
        session=FileSessionStorage.Config(directory=tmp_path / "sessions"),
        dns=dns_config,
        orchestrator=orchestrator_config,
    )


@pytest_asyncio.fixture
async def portal(portal_config, fake_ca, fake_dns):
    runner, portal = await AcmePortal.runner(
        portal_config, client=fake_ca, resolver_factory=fake_dns.factory
    )
    yield portal
    await runner.shutdown()
    await runner.cleanup()


@pytest.fixture
def base_url(portal_config):
    return f"http://{portal_config.hostname}:{portal_config.port}"


@pytest_asyncio.fixture
async def http():
    async with aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True)) as session:
        yield session
