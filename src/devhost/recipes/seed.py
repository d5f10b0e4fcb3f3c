# recipes/seed.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from faker import Faker

from ..commands import CommandContext
from ..dsl import ResourceBuilder
from ..errors import SeedItemError
from ..model import CommandResult
from ..process import CancellationToken

log = logging.getLogger(__name__)

SEED_COUNT = 50
SEED_DELAY_SECONDS = 0.05

PersonFactory = Callable[[Faker], Dict[str, Any]]


@dataclass
class SeedReport:
    success_count: int = 0
    error_count: int = 0

    @property
    def total(self) -> int:
        return self.success_count + self.error_count


def fake_person(fake: Faker) -> Dict[str, Any]:
    """A fake person payload: first/last name, email, adult date of birth."""
    first = fake.first_name()
    last = fake.last_name()
    born = datetime.combine(fake.date_of_birth(minimum_age=18, maximum_age=80), time(), tzinfo=timezone.utc)
    return {
        "firstName": first,
        "lastName": last,
        "email": f"{first}.{last}@{fake.safe_domain_name()}".lower().replace(" ", ""),
        "dateOfBirth": born.isoformat().replace("+00:00", "Z"),
    }


async def post_person(client: httpx.AsyncClient, base_url: str, person: Dict[str, Any]) -> None:
    try:
        resp = await client.post(f"{base_url.rstrip('/')}/people", json=person)
    except httpx.HTTPError as e:
        raise SeedItemError(f"{type(e).__name__}: {e}") from e
    if not resp.is_success:
        raise SeedItemError(f"{resp.status_code} - {resp.text}")


async def seed_people(
    base_url: str,
    *,
    count: int = SEED_COUNT,
    delay: float = SEED_DELAY_SECONDS,
    client: Optional[httpx.AsyncClient] = None,
    token: Optional[CancellationToken] = None,
    logger: Optional[logging.Logger] = None,
    factory: PersonFactory = fake_person,
    fake: Optional[Faker] = None,
) -> SeedReport:
    """
    POST `count` generated people to `{base_url}/people`, one at a time.

    A failed item is logged and counted; the loop carries on. Stops early
    (without error) when `token` is cancelled.
    """
    logger = logger or log
    fake = fake or Faker()
    report = SeedReport()
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)

    logger.info("seeding %d people into %s", count, base_url)
    try:
        for i in range(count):
            if token is not None and token.cancelled:
                logger.info("seeding cancelled after %d items", i)
                break

            person = factory(fake)
            try:
                await post_person(client, base_url, person)
            except SeedItemError as e:
                report.error_count += 1
                logger.error("failed to create %s %s: %s", person.get("firstName"), person.get("lastName"), e)
            else:
                report.success_count += 1
                logger.info("created: %s %s (%s)", person.get("firstName"), person.get("lastName"), person.get("email"))

            if delay > 0 and i < count - 1:
                await asyncio.sleep(delay)
    finally:
        if owns_client:
            await client.aclose()

    logger.info(
        "seeding complete: created %d people, %d errors",
        report.success_count,
        report.error_count,
    )
    return report


def with_data_population(
    project: ResourceBuilder,
    *,
    endpoint: str = "http",
    count: int = SEED_COUNT,
    delay: float = SEED_DELAY_SECONDS,
) -> ResourceBuilder:
    """Add a `seed-data` command that fills the project's API with fake people."""
    ref = project.get_endpoint(endpoint)

    async def seed(ctx: CommandContext) -> CommandResult:
        base_url = await ref.get_value()
        await seed_people(base_url, count=count, delay=delay, token=ctx.token, logger=ctx.logger)
        return CommandResult.ok()

    return project.with_command("seed-data", "Seed Data", seed)
