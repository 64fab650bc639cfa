import builtins as _builtins
import sys

# ============================================================
# LOGGING HELPER
# ============================================================
# Set to True for detailed logging, False for minimal logging
DEBUG = False

STATUS_MESSAGES = {
    200: "OK - Success",
    204: "No Content",
    301: "Moved Permanently",
    302: "Found - Redirect",
    303: "See Other",
    307: "Temporary Redirect",
    400: "Bad Request - Invalid request syntax",
    401: "Unauthorized - Cookies or access token rejected",
    403: "Forbidden - Access denied",
    404: "Not Found - Resource doesn't exist",
    408: "Request Timeout",
    413: "Payload Too Large",
    429: "Too Many Requests - Rate limit exceeded",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


def set_debug(enabled: bool) -> None:
    global DEBUG
    DEBUG = bool(enabled)


def _safe_print(*args, **kwargs) -> None:
    """
    Print without crashing on console encoding issues.
    """
    try:
        _builtins.print(*args, **kwargs)
    except UnicodeEncodeError:
        file = kwargs.get("file") or sys.stdout
        sep = kwargs.get("sep", " ")
        end = kwargs.get("end", "\n")
        flush = bool(kwargs.get("flush", False))

        try:
            text = sep.join(str(a) for a in args) + end
            encoding = getattr(file, "encoding", None) or getattr(sys.stdout, "encoding", None) or "utf-8"
            safe_text = text.encode(encoding, errors="backslashreplace").decode(encoding, errors="ignore")
            file.write(safe_text)
            if flush:
                try:
                    file.flush()
                except Exception:
                    pass
        except Exception:
            return


def debug_print(*args, **kwargs):
    """Print debug messages only if DEBUG is True"""
    if DEBUG:
        _safe_print(*args, **kwargs)


def get_status_emoji(status_code: int) -> str:
    if 200 <= status_code < 300:
        return "✅"
    elif 300 <= status_code < 400:
        return "↪️"
    elif 400 <= status_code < 500:
        if status_code == 401:
            return "🔒"
        elif status_code == 403:
            return "🚫"
        elif status_code == 429:
            return "⏱️"
        return "⚠️"
    elif 500 <= status_code < 600:
        return "❌"
    return "ℹ️"


def log_http_status(status_code: int, context: str = ""):
    """Log HTTP status with readable message"""
    emoji = get_status_emoji(status_code)
    message = STATUS_MESSAGES.get(status_code, f"Unknown Status {status_code}")
    if context:
        debug_print(f"{emoji} HTTP {status_code}: {message} ({context})")
    else:
        debug_print(f"{emoji} HTTP {status_code}: {message}")
