"""FastAPI application exposing the read-only session status routes."""

from fastapi import FastAPI

from inboxrelay.application.session_table import SessionTable
from inboxrelay.infrastructure.postgres_client import PostgresClientWrapper
from inboxrelay.infrastructure.settings import Settings, get_settings


def create_app(
    sessions: SessionTable,
    settings: Settings | None = None,
    postgres: PostgresClientWrapper | None = None,
) -> FastAPI:
    """Create the status application bound to a live session table."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Read-only status of the mailbox sessions managed by this worker instance",
    )
    app.state.sessions = sessions
    app.state.instance_id = settings.instance_id
    app.state.postgres = postgres

    from inboxrelay.api.routes import router

    app.include_router(router)

    return app
