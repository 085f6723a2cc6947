"""
Logging setup for the API process and the uvicorn loggers.
"""
import logging


def setup_logging(level: str = "INFO") -> None:
    resolved = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(resolved)
    # pymongo is chatty at INFO
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def mask(value: str | None, keep: int = 20) -> str:
    """Shorten a secret-bearing string (URI, token) for log lines."""
    if not value:
        return ""
    return value[:keep] + "..."
