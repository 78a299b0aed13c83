from contextlib import asynccontextmanager
import logging

import httpx
import uvicorn
from fastapi import FastAPI, Request

from gateway.config import GatewaySettings, get_settings
from gateway.proxy import proxy_request

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(
    settings: GatewaySettings = None, transport: httpx.AsyncBaseTransport = None
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Gateway settings (defaults to the environment)
        transport: Optional httpx transport for the upstream client
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # One pooled client shared by all requests
        async with httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT),
            follow_redirects=False,
        ) as client:
            app.state.http_client = client
            logger.info(
                f"Gateway listening on port {settings.GATEWAY_PORT}, "
                f"forwarding to {settings.BACKEND_URL}"
            )
            yield
        logger.info("Gateway shut down")

    app = FastAPI(
        title="Product Catalog Gateway",
        description="Reverse proxy in front of the product catalog service.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/health")
    async def health():
        """Gateway liveness, answered locally."""
        return {"ok": True}

    @app.api_route(f"{settings.API_PREFIX}/{{path:path}}", methods=PROXY_METHODS)
    async def proxy(request: Request, path: str):
        return await proxy_request(request, request.app.state.http_client, settings)

    return app


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

app = create_app(settings)


def run():
    """Console entry point."""
    uvicorn.run(app, host=settings.GATEWAY_HOST, port=settings.GATEWAY_PORT)
