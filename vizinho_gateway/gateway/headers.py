"""
Vizinho Virtual Gateway - Response Hardening Headers

Applied to every response the gateway produces, including error responses
built outside the middleware stack.
"""

from starlette.datastructures import MutableHeaders

HARDENING_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}

STRIPPED_HEADERS = ("server", "x-powered-by")


def apply_hardening_headers(headers: MutableHeaders) -> None:
    """Set the hardening headers and drop server-identifying ones, in place."""
    for name in STRIPPED_HEADERS:
        del headers[name]
    for name, value in HARDENING_HEADERS.items():
        headers[name] = value
