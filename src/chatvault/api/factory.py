"""FastAPI application factory for the read-only query surface."""

from fastapi import FastAPI, Request, Response

from chatvault.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

from .routes import chats, contacts, health, messages, search


def create_app() -> FastAPI:
    """Create the FastAPI app with every read-only route mounted."""
    app = FastAPI(
        title="chatvault",
        docs_url=None,
        redoc_url=None,
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(health.router)
    app.include_router(chats.router)
    app.include_router(contacts.router)
    app.include_router(messages.router)
    app.include_router(search.router)

    return app
