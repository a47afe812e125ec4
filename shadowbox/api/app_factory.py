import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..services.manager_service import ManagerService
from . import management
from .middleware import PathSanitizationMiddleware


def create_management_app(manager_service: ManagerService, api_prefix: str = "") -> FastAPI:
    """
    Build the management API.

    Middleware runs outermost first: CORS headers, path sanitisation, request
    logging. Body parsing happens in the route models.
    """
    app = FastAPI(
        title="Shadowbox Management API",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.manager_service = manager_service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logging.debug(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    # Added last is outermost
    app.add_middleware(PathSanitizationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(management.router, prefix=api_prefix)
    return app
