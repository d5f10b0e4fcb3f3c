# apphost.py
"""
Local development host for the people API.

    devhost run                          # start everything
    devhost run --exec api:seed-data     # ...and seed it once it is up
    devhost exec appdb reset             # drop and recreate the database
    devhost publish                      # render deploy artifacts
"""
from devhost import AppBuilder
from devhost.recipes import add_migration, with_reset_db_command


def apphost() -> AppBuilder:
    builder = AppBuilder("people")

    postgres = builder.add_postgres("postgres")
    db = postgres.add_database("appdb")
    with_reset_db_command(db)

    # MCP server for poking at the database from an assistant
    builder.add_container(
        "pgmcp",
        "crystaldba/postgres-mcp",
        "--access-mode=unrestricted",
        "--transport=sse",
    ) \
        .with_http_endpoint(target_port=8000) \
        .with_env("DATABASE_URI", db.connection_string) \
        .wait_for(db) \
        .with_parent_relationship(postgres) \
        .exclude_from_manifest()

    # the app listens on $PORT, taken from its http endpoint
    api = builder.add_project("api", "./api", "python3", "-m", "app") \
        .with_http_endpoint() \
        .with_http_health_check("/health") \
        .with_reference(db) \
        .wait_for(db) \
        .with_external_http_endpoints() \
        .with_build() \
        .with_data_population()

    migrate = add_migration(builder, api, db)
    api.with_child_relationship(migrate).wait_for_completion(migrate)

    return builder
