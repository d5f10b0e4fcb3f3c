# recipes/postgres.py
from __future__ import annotations

import re
from typing import Optional

from .. import settings
from ..dsl import AppBuilder, ResourceBuilder
from ..model import Resource, ResourceKind
from ..probes import command_probe

POSTGRES_PORT = 5432

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PostgresServerBuilder(ResourceBuilder):
    """Builder for a postgres server container; adds databases on it."""

    def add_database(self, name: str, database_name: Optional[str] = None) -> ResourceBuilder:
        return add_database(self, name, database_name)


def add_postgres(
    builder: AppBuilder,
    name: str,
    *,
    password: Optional[str] = None,
    port: Optional[int] = None,
    user: str = settings.POSTGRES_USER,
    image: str = settings.POSTGRES_IMAGE,
) -> PostgresServerBuilder:
    password = password or settings.POSTGRES_PASSWORD
    resource = Resource(
        name=name,
        kind=ResourceKind.CONTAINER,
        command="docker",
        image=image,
        env={"POSTGRES_USER": user, "POSTGRES_PASSWORD": password},
        connection_string=f"postgresql://{user}:{password}@{{host}}:{{port}}",
        annotations={"postgres": {"user": user}},
    )
    builder.add_resource(resource)

    server = PostgresServerBuilder(builder, resource)
    server.with_endpoint("tcp", scheme="tcp", port=port, target_port=POSTGRES_PORT)
    # -h forces TCP: the image's init-time server only listens on the socket
    server.with_health_check(
        command_probe("docker", ["exec", name, "pg_isready", "-U", user, "-h", "localhost"])
    )
    server.with_icon_name("Database")
    return server


def add_database(
    server: ResourceBuilder,
    name: str,
    database_name: Optional[str] = None,
) -> ResourceBuilder:
    """
    Declare a database on a postgres server.

    The database is a one-shot child of the server: it starts once the
    server is ready and is ready itself once the database exists.
    """
    db_name = database_name or name
    if not _IDENTIFIER.match(db_name):
        raise ValueError(f"Invalid database name: {db_name!r}")

    user = server.resource.annotations["postgres"]["user"]
    resource = Resource(
        name=name,
        kind=ResourceKind.DATABASE,
        command="docker",
        args=["exec", server.name, "sh", "-c", create_database_script(user, db_name)],
        one_shot=True,
        connection_string=f"{server.resource.connection_string}/{db_name}",
        endpoint_source=server.resource,
        annotations={"postgres": {"server": server.name, "user": user, "database": db_name}},
    )
    db = server.app_builder.add_resource(resource)
    return db.with_parent_relationship(server).wait_for(server).with_icon_name("Database")


def create_database_script(user: str, db_name: str) -> str:
    return (
        f"psql -U {user} -tAc \"SELECT 1 FROM pg_database WHERE datname='{db_name}'\" | grep -q 1"
        f" || createdb -U {user} {db_name}"
    )
