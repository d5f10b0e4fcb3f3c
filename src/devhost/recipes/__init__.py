"""Reusable resource recipes composed on top of the builder DSL."""

from .build import with_build
from .migrate import add_migration
from .postgres import PostgresServerBuilder, add_database, add_postgres
from .reset import with_reset_db_command
from .seed import SeedReport, seed_people, with_data_population

__all__ = [
    "PostgresServerBuilder",
    "SeedReport",
    "add_database",
    "add_migration",
    "add_postgres",
    "seed_people",
    "with_build",
    "with_data_population",
    "with_reset_db_command",
]
