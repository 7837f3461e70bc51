import asyncio
import logging
import logging.config
from pathlib import Path
from typing import Any

import aiohttp
import click
import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeportal.dns_checker import DnsPropagationChecker, record_name
from acmeportal.exceptions import DnsVerificationError
from acmeportal.poller import DNS_CHALLENGE_STATUS, STATUS, StatusPoller
from acmeportal.server import AcmePortal
from acmeportal.util import generate_rsa_key, generate_ec_key

logger = logging.getLogger(__name__)


class Config(BaseSettings, extra="forbid"):
    portal: AcmePortal.Config = Field(default_factory=AcmePortal.Config)
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream) or {}

    return Config.model_validate(config)


def configure_logging(config: Config):
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(level=logging.INFO)


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="rsa",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    account_key_file = Path(account_key_file)
    if key_type == "rsa":
        generate_rsa_key(account_key_file)
    else:
        generate_ec_key(account_key_file)


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path())
@click.option("--path", type=click.Path())
def run(config_file: str, path: str):
    """Starts the portal as defined in the config file."""
    config = load_config(config_file) if config_file else Config()
    configure_logging(config)

    if path:
        config.portal.path = path
        config.portal.hostname = ""

    click.echo(f"Starting {AcmePortal.__name__}")
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    runner, portal = loop.run_until_complete(AcmePortal.runner(config.portal))

    try:
        loop.run_forever()
    except KeyboardInterrupt:
        loop.run_until_complete(runner.shutdown())
        loop.run_until_complete(runner.cleanup())


@main.command()
@click.argument("domain")
@click.argument("value")
@click.option("--nameserver", "-n", multiple=True, help="Query these nameservers instead of the system's.")
@click.option("--retries", type=click.INT, default=2, show_default=True)
@click.option("--delay", type=click.FLOAT, default=4.0, show_default=True)
def check_dns(domain, value, nameserver, retries, delay):
    """Checks whether the DNS-01 record of DOMAIN carries VALUE."""
    logging.basicConfig(level=logging.INFO)
    checker = DnsPropagationChecker(
        DnsPropagationChecker.Config(
            retries=retries, delay=delay, nameservers=list(nameserver)
        )
    )

    try:
        found = asyncio.run(checker.verify(domain, value))
    except DnsVerificationError as e:
        raise click.ClickException(str(e))

    click.echo(f"OK. {record_name(domain)} has {', '.join(found)}")


def echo_message(purpose: str, data: dict):
    click.echo(f"[{purpose}] {data.get('message') or data.get('status')}")
    for detail in data.get("details") or []:
        click.echo(f"  - {detail}")


async def _post(session: aiohttp.ClientSession, url: str, payload: dict) -> dict:
    async with session.post(url, json=payload) as resp:
        data = await resp.json()
        if resp.status >= 400:
            echo_message(url, data)
        return data


async def request_certificate(
    server: str, domain: str, email: str, challenge: str, interval: float, max_polls: int
) -> bool:
    server = server.rstrip("/")
    async with aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True)) as session:
        poller = StatusPoller(
            session,
            server,
            interval=interval,
            max_polls=max_polls,
            on_message=echo_message,
        )

        generated = await _post(
            session,
            f"{server}/generate",
            {"domain": domain, "email": email, "challengeType": challenge},
        )
        if not generated.get("success"):
            return False
        click.echo(generated["message"])

        if challenge == "dns":
            prepared = await poller.poll(DNS_CHALLENGE_STATUS)
            if not prepared.succeeded:
                click.echo(prepared.message)
                return False

            dns_data = prepared.response["dnsData"]
            click.echo(
                f"Create a TXT record named {dns_data['recordName']} with the value {dns_data['recordValue']}"
            )

            loop = asyncio.get_running_loop()
            while True:
                await loop.run_in_executor(
                    None, click.pause, "Press any key once the record is published..."
                )
                checked = await _post(session, f"{server}/check-dns", {"domain": domain})
                if checked.get("success"):
                    click.echo(checked["message"])
                    break
                if not await loop.run_in_executor(None, click.confirm, "Check again?", True):
                    return False

            verified = await _post(
                session,
                f"{server}/verify-dns",
                {"domain": domain, "useVerifiedChallenge": True},
            )
            if not verified.get("success"):
                return False
            click.echo(verified["message"])

        outcome = await poller.poll(STATUS)
        click.echo(outcome.message)
        return outcome.succeeded and outcome.response.get("status") == "completed"


@main.command()
@click.option("--server", default="http://localhost:3001", show_default=True)
@click.option("--domain", required=True)
@click.option("--email", required=True)
@click.option(
    "--challenge",
    type=click.Choice(["http", "dns"], case_sensitive=False),
    default="http",
    show_default=True,
)
@click.option("--interval", type=click.FLOAT, default=5.0, show_default=True)
@click.option("--max-polls", type=click.INT, default=60, show_default=True)
def request(server, domain, email, challenge, interval, max_polls):
    """Requests a certificate from a running portal and follows it until it is issued."""
    logging.basicConfig(level=logging.WARNING)
    if not asyncio.run(
        request_certificate(server, domain, email, challenge.lower(), interval, max_polls)
    ):
        raise click.ClickException(f"No certificate was issued for {domain}")


if __name__ == "__main__":
    main()
