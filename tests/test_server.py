import asyncio

import acme.messages
import aiohttp
import pytest
import yarl
from aiohttp import web

from acmeportal.client import AcmeClient
from acmeportal.client.client import LETSENCRYPT_PRODUCTION, LETSENCRYPT_STAGING
from acmeportal.server import AcmePortal, FileSessionStorage
from acmeportal.server.server import SessionIdKey, SessionKey
from .fakes import CA_URL

DOMAIN = "example.com"
RECORD = "_acme-challenge.example.com"


async def poll(http, url, until, tries=200):
    for _ in range(tries):
        async with http.get(url) as resp:
            data = await resp.json()
        if until(data):
            return data
        await asyncio.sleep(0.01)
    raise AssertionError(f"{url} never reached the expected state, last response: {data}")


async def generate(http, base_url, challenge_type, domain=DOMAIN):
    async with http.post(
        f"{base_url}/generate",
        json={"domain": domain, "email": "a@b.com", "challengeType": challenge_type},
    ) as resp:
        assert resp.status == 202
        data = await resp.json()
    assert data["success"]
    assert data["status"] == "processing"
    return data


def session_id(http, base_url, portal_config):
    cookies = http.cookie_jar.filter_cookies(yarl.URL(base_url))
    return cookies[portal_config.session.cookie_name].value


async def ready_dns_data(http, base_url):
    data = await poll(
        http, f"{base_url}/dns-challenge-status", lambda d: d["status"] != "preparing"
    )
    assert data["status"] == "ready"
    return data["dnsData"]


@pytest.mark.asyncio
async def test_dns_challenge_becomes_ready(portal, http, base_url):
    await generate(http, base_url, "dns")

    dns_data = await ready_dns_data(http, base_url)

    assert dns_data["domain"] == DOMAIN
    assert dns_data["recordName"] == RECORD
    assert dns_data["recordValue"]
    assert dns_data["recordValue"] != "PLACEHOLDER_VALUE"
    assert dns_data["recordValue"] == portal.orchestrator.store.get(DOMAIN).dns_record_value


@pytest.mark.asyncio
async def test_second_request_wins(portal, http, base_url, fake_ca):
    await generate(http, base_url, "dns")
    await generate(http, base_url, "dns")

    dns_data = await ready_dns_data(http, base_url)
    await asyncio.gather(*portal.tasks)

    pending = portal.orchestrator.store.get(DOMAIN)
    assert pending.order.url == f"{CA_URL}/order/1"
    assert dns_data["recordValue"] == pending.dns_record_value


@pytest.mark.asyncio
async def test_new_request_abandons_own_challenge(portal, http, base_url):
    await generate(http, base_url, "dns")
    await ready_dns_data(http, base_url)

    await generate(http, base_url, "dns", domain="example.org")
    await ready_dns_data(http, base_url)
    await asyncio.gather(*portal.tasks)

    assert DOMAIN not in portal.orchestrator.store
    assert "example.org" in portal.orchestrator.store


@pytest.mark.asyncio
async def test_new_request_leaves_challenge_of_other_session(
    portal, http, base_url, fake_dns
):
    async with aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True)) as other:
        await generate(http, base_url, "dns")
        await ready_dns_data(http, base_url)
        await generate(other, base_url, "dns")
        other_data = await ready_dns_data(other, base_url)
        await asyncio.gather(*portal.tasks)

        # the first session moves on, its challenge for the domain was replaced already
        await generate(http, base_url, "dns", domain="example.org")
        await ready_dns_data(http, base_url)
        await asyncio.gather(*portal.tasks)

        pending = portal.orchestrator.store.get(DOMAIN)
        assert pending is not None
        assert pending.dns_record_value == other_data["recordValue"]

        fake_dns.set_txt(RECORD, other_data["recordValue"])
        async with other.post(f"{base_url}/verify-dns", json={"domain": DOMAIN}) as resp:
            assert resp.status == 202

        status = await poll(other, f"{base_url}/status", lambda d: d["status"] != "pending")
        assert status["status"] == "completed"
        assert status["domain"] == DOMAIN


@pytest.mark.asyncio
async def test_check_dns_with_quoted_record(portal, http, base_url, fake_dns):
    await generate(http, base_url, "dns")
    dns_data = await ready_dns_data(http, base_url)
    fake_dns.set_txt(RECORD, f'"{dns_data["recordValue"]}"')

    async with http.post(f"{base_url}/check-dns", json={"domain": DOMAIN}) as resp:
        assert resp.status == 200
        data = await resp.json()

    assert data == {"success": True, "message": "DNS record verified successfully", "domain": DOMAIN}


@pytest.mark.asyncio
async def test_check_dns_with_explicit_value(portal, http, base_url, fake_dns):
    fake_dns.set_txt("_acme-challenge.example.org", "some-value")

    async with http.post(
        f"{base_url}/check-dns", json={"domain": "example.org", "recordValue": "some-value"}
    ) as resp:
        assert resp.status == 200
        assert (await resp.json())["success"]


@pytest.mark.asyncio
async def test_check_dns_only_verifies_pending_record(
    portal, http, base_url, fake_dns, portal_config
):
    await generate(http, base_url, "dns")
    dns_data = await ready_dns_data(http, base_url)
    sid = session_id(http, base_url, portal_config)

    fake_dns.set_txt(RECORD, "some-other-value")
    async with http.post(
        f"{base_url}/check-dns", json={"domain": DOMAIN, "recordValue": "some-other-value"}
    ) as resp:
        assert resp.status == 200
        assert (await resp.json())["success"]
    assert not (await portal.requests.load(sid)).pending.dns_verified

    fake_dns.set_txt(RECORD, dns_data["recordValue"])
    async with http.post(
        f"{base_url}/check-dns", json={"domain": DOMAIN, "recordValue": dns_data["recordValue"]}
    ) as resp:
        assert resp.status == 200
    assert (await portal.requests.load(sid)).pending.dns_verified


@pytest.mark.asyncio
async def test_check_dns_without_information(portal, http, base_url):
    async with http.post(f"{base_url}/check-dns", json={"domain": DOMAIN}) as resp:
        assert resp.status == 400
        data = await resp.json()

    assert data["success"] is False
    assert data["message"].startswith("No DNS challenge information found")


@pytest.mark.asyncio
async def test_check_dns_failures_have_details(portal, http, base_url, fake_dns):
    await generate(http, base_url, "dns")
    dns_data = await ready_dns_data(http, base_url)

    async with http.post(f"{base_url}/check-dns", json={"domain": DOMAIN}) as resp:
        assert resp.status == 400
        data = await resp.json()
    assert data["message"] == "DNS verification failed"
    assert data["error"] == f"DNS record not found for {RECORD}"
    assert f"Check that you created a TXT record with name: {RECORD}" in data["details"]
    assert f"And value: {dns_data['recordValue']}" in data["details"]

    fake_dns.set_txt(RECORD, "wrong")
    async with http.post(f"{base_url}/check-dns", json={"domain": DOMAIN}) as resp:
        data = await resp.json()
    assert "The DNS record was found but has an incorrect value." in data["details"]


@pytest.mark.asyncio
async def test_dns_flow(portal, http, base_url, fake_dns, fake_ca):
    await generate(http, base_url, "dns")
    dns_data = await ready_dns_data(http, base_url)
    fake_dns.set_txt(RECORD, dns_data["recordValue"])

    async with http.post(f"{base_url}/check-dns", json={"domain": DOMAIN}) as resp:
        assert (await resp.json())["success"]

    async with http.post(f"{base_url}/verify-dns", json={"domain": DOMAIN}) as resp:
        assert resp.status == 202
        assert (await resp.json())["status"] == "processing"

    status = await poll(http, f"{base_url}/status", lambda d: d["status"] != "pending")
    assert status["status"] == "completed"
    assert status["domain"] == DOMAIN

    async with http.get(f"{base_url}/status") as resp:
        assert (await resp.json()) == {"status": "no_pending_requests"}

    async with http.get(f"{base_url}/certificates") as resp:
        certificates = (await resp.json())["certificates"]
    assert [c["id"] for c in certificates] == [status["recordId"]]
    assert certificates[0]["verificationMethod"] == "dns-01"
    assert certificates[0]["expiresAt"].startswith("2031-01-01")

    async with http.get(f"{base_url}/certificates/{status['recordId']}/download/cert") as resp:
        assert resp.status == 200
        assert "example.com_certificate.pem" in resp.headers["Content-Disposition"]
        assert (await resp.text()).startswith("-----BEGIN CERTIFICATE-----")

    async with http.get(f"{base_url}/certificates/{status['recordId']}/download/key") as resp:
        assert resp.status == 200
        assert "PRIVATE KEY" in await resp.text()

    async with http.get(f"{base_url}/certificates/{status['recordId']}/download/csr") as resp:
        assert resp.status == 400

    # certificates are only visible in the session that requested them
    async with aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True)) as other:
        async with other.get(f"{base_url}/certificates/{status['recordId']}") as resp:
            assert resp.status == 404
        async with other.get(f"{base_url}/certificates") as resp:
            assert (await resp.json())["certificates"] == []


@pytest.mark.asyncio
async def test_http_flow(portal, http, base_url):
    await generate(http, base_url, "http")

    status = await poll(http, f"{base_url}/status", lambda d: d["status"] != "pending")

    assert status["status"] == "completed"
    record = portal.certificates.get(status["recordId"])
    assert record.verification_method == "http-01"
    assert record.domain == DOMAIN


@pytest.mark.asyncio
async def test_http_challenge_is_served_while_validating(portal, http, base_url, fake_ca):
    fake_ca.hold_validation = asyncio.Event()
    await generate(http, base_url, "http")

    status = await poll(
        http, f"{base_url}/status", lambda d: d.get("stage") == "validating"
    )
    assert status["status"] == "pending"

    token = fake_ca.challenge_of(f"{CA_URL}/order/0", "http-01")["token"]
    async with http.get(f"{base_url}/.well-known/acme-challenge/{token}") as resp:
        assert resp.status == 200
        assert (await resp.text()).startswith(f"{token}.")

    fake_ca.hold_validation.set()
    status = await poll(http, f"{base_url}/status", lambda d: d["status"] != "pending")
    assert status["status"] == "completed"


@pytest.mark.asyncio
async def test_http_failure_is_reported_once(portal, http, base_url, fake_ca):
    fake_ca.validation_outcomes = ["invalid"]
    await generate(http, base_url, "http")

    status = await poll(http, f"{base_url}/status", lambda d: d["status"] != "pending")

    assert status["status"] == "error"
    assert "Incorrect TXT record found" in status["message"]
    assert status["details"]

    async with http.get(f"{base_url}/status") as resp:
        assert (await resp.json())["status"] == "no_pending_requests"


@pytest.mark.asyncio
async def test_rate_limit_details(portal, http, base_url, fake_ca):
    fake_ca.order_error = acme.messages.Error.with_code("rateLimited", detail="too many orders")
    await generate(http, base_url, "http")

    status = await poll(http, f"{base_url}/status", lambda d: d["status"] != "pending")

    assert status["status"] == "error"
    assert any("limiting" in detail for detail in status["details"])


@pytest.mark.asyncio
async def test_acme_challenge_responses(portal, http, base_url):
    portal.orchestrator.store.set_key_authorization("tok", "tok.thumbprint")

    async with http.get(f"{base_url}/.well-known/acme-challenge/tok") as resp:
        assert resp.status == 200
        assert resp.content_type == "text/plain"
        assert await resp.text() == "tok.thumbprint"

    async with http.get(f"{base_url}/.well-known/acme-challenge/unknown") as resp:
        assert resp.status == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"email": "a@b.com", "challengeType": "dns"},
        {"domain": DOMAIN, "challengeType": "dns"},
        {"domain": DOMAIN, "email": "a@b.com", "challengeType": "tls-alpn"},
    ],
)
async def test_generate_rejects_bad_input(portal, http, base_url, body):
    async with http.post(f"{base_url}/generate", json=body) as resp:
        assert resp.status == 400
        data = await resp.json()
    assert data["success"] is False

    async with http.get(f"{base_url}/status") as resp:
        assert (await resp.json())["status"] == "no_pending_requests"


@pytest.mark.asyncio
async def test_generate_rejects_malformed_body(portal, http, base_url):
    async with http.post(f"{base_url}/generate", data="not json") as resp:
        assert resp.status == 400


@pytest.mark.asyncio
async def test_verify_dns_without_pending_request(portal, http, base_url):
    async with http.post(f"{base_url}/verify-dns", json={"domain": DOMAIN}) as resp:
        assert resp.status == 400
        assert (await resp.json())["error"] == "No pending DNS certificate request found"


@pytest.mark.asyncio
async def test_session_cookie(portal, http, base_url, portal_config):
    async with http.get(f"{base_url}/status") as resp:
        cookie = resp.cookies[portal_config.session.cookie_name]
    assert cookie["httponly"]
    assert not cookie["secure"]

    # the session, and with it the user, is kept
    async with http.get(f"{base_url}/status") as resp:
        assert resp.cookies[portal_config.session.cookie_name].value == cookie.value


def test_request_keys_are_typed():
    # string keys on requests trigger web.NotAppKeyWarning
    assert isinstance(SessionIdKey, web.RequestKey)
    assert isinstance(SessionKey, web.RequestKey)


@pytest.mark.parametrize(
    "production, directory, expected",
    [
        (False, None, LETSENCRYPT_STAGING),
        (True, None, LETSENCRYPT_PRODUCTION),
        (True, "https://ca.test/directory", "https://ca.test/directory"),
    ],
)
def test_client_directory(tmp_path, production, directory, expected):
    client = {"private_key": tmp_path / "account.key"}
    if directory:
        client["directory"] = directory

    portal = AcmePortal(
        AcmePortal.Config(
            production=production,
            data_dir=tmp_path / "data",
            certificate_dir=tmp_path / "certificates",
            session=FileSessionStorage.Config(directory=tmp_path / "sessions"),
            client=AcmeClient.Config(**client),
        )
    )

    assert portal.orchestrator._client.directory_url == expected
