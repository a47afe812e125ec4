import logging
import re

from starlette.types import ASGIApp, Receive, Scope, Send

_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def sanitize_path(path: str) -> str:
    """Collapse repeated slashes and drop a trailing one."""
    path = _DUPLICATE_SLASHES.sub("/", path)
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"
    return path


class PathSanitizationMiddleware:
    """Rewrites the request path before routing."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            path = scope["path"]
            clean = sanitize_path(path)
            if clean != path:
                logging.debug(f"Sanitized request path {path} -> {clean}")
                scope = dict(scope)
                scope["path"] = clean
                scope["raw_path"] = clean.encode("utf-8")
        await self.app(scope, receive, send)
