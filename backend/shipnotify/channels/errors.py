"""Turn HTTP adapter exceptions into SendResult error strings."""

import httpx

# Client errors that retrying will not fix without operator action
_STATUS_KINDS = {
    401: ("auth_error", "{provider} rejected the credentials"),
    403: ("permission_error", "{provider} refused the request"),
    404: ("not_found", "{provider} endpoint does not exist"),
    429: ("rate_limit", "{provider} is rate limiting, retrying later"),
}


def format_error(e: Exception, provider: str = "provider") -> str:
    """Describe ``e`` as ``kind: message`` for ``SendResult.error``.

    ``kind`` is stable (``server_error``, ``timeout``...) so failed tasks
    can be grouped; the message names the provider.
    """
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status in _STATUS_KINDS:
            kind, message = _STATUS_KINDS[status]
            message = message.format(provider=provider)
        elif status >= 500:
            kind, message = "server_error", f"{provider} returned {status}"
        else:
            kind = "http_error"
            message = f"{provider} returned {status}: {e.response.text[:100]}"
    elif isinstance(e, httpx.TimeoutException):
        kind, message = "timeout", f"no response from {provider}"
    elif isinstance(e, httpx.ConnectError):
        kind, message = "connection_error", f"cannot reach {provider}"
    elif isinstance(e, httpx.RequestError):
        kind, message = "request_error", str(e)
    elif isinstance(e, ValueError):
        kind, message = "invalid_response", f"{provider} sent unreadable data: {e}"
    else:
        kind, message = "unknown_error", str(e)
    return f"{kind}: {message}"
