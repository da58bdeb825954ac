# farmgate/authz_errors.py
from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# detail code -> page a browser is sent to
_HTML_REDIRECTS = {
    "NOT_AUTHENTICATED": "/login",
    "PAYMENT_REQUIRED": "/payment",
    "ALREADY_ENTITLED": "/dashboard",
    "NO_ACCOUNT": "/dashboard",
}


def _wants_html(request: Request) -> bool:
    accept = (request.headers.get("accept") or "").lower()
    # browsers usually send text/html
    return "text/html" in accept


def _detail_code(exc: StarletteHTTPException) -> str | None:
    detail = getattr(exc, "detail", None)
    if isinstance(detail, dict):
        code = detail.get("code")
        if isinstance(code, str):
            return code
    return None


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    headers = getattr(exc, "headers", None)

    if _wants_html(request):
        target = _HTML_REDIRECTS.get(_detail_code(exc) or "")
        if target:
            return RedirectResponse(url=target, status_code=303)

    # Everything else: normal JSON
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)
