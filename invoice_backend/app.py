"""Application factory and entry point for the invoice backend."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import Authenticator, DenyAllAuthenticator, KeyringAuthenticator
from .config import Settings
from .contract_client import ContractClient
from .errors import APIError
from .routes import router
from .store import InvoiceStore

SERVER_VERSION = "InvoiceBackend/1.0"

LOGGER = logging.getLogger("invoice-backend")


def _default_authenticator(settings: Settings) -> Authenticator:
    if settings.auth_keyring_path is None:
        LOGGER.warning("AUTH_KEYRING_PATH not set; protected routes will reject every request")
        return DenyAllAuthenticator()
    return KeyringAuthenticator.from_file(settings.auth_keyring_path)


def create_app(
    settings: Optional[Settings] = None,
    *,
    client: Optional[ContractClient] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    client = client or ContractClient(settings, InvoiceStore(settings.readmodel_path))
    authenticator = authenticator or _default_authenticator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Initialization failures are logged by the client; routes then answer 503.
        # Subscriptions begin whenever initialization first succeeds.
        await client.initialize()
        client.start_subscriptions()
        try:
            yield
        finally:
            await client.close()
            client.store.close()

    app = FastAPI(title="Invoice Token API", version="1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.contract_client = client
    app.state.authenticator = authenticator

    @app.exception_handler(APIError)
    async def _api_error(request: Request, exc: APIError) -> JSONResponse:
        if exc.status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=int(exc.status), content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=HTTPStatus.BAD_REQUEST,
            content={"error": "invalid request", "details": {"errors": problems}},
        )

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True, "version": SERVER_VERSION}

    @app.get("/status")
    async def status() -> dict:
        return client.status()

    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    app = create_app(settings)
    LOGGER.info("Invoice backend listening on http://%s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
