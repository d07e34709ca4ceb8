"""Universal logfire setup for the application."""

import logfire

from logging import basicConfig, INFO

from fastapi import FastAPI

from utils.settings import Settings


def configure_logging(settings: Settings) -> None:
    """Configure logfire once per process and route stdlib loggers through it.

    Nothing leaves the process unless a write token is configured.
    """
    logfire.configure(
        token=settings.logfire_write_token,
        service_name="turnstile",
        send_to_logfire="if-token-present",
        console=False if settings.logfire_write_token else None,
    )
    basicConfig(level=INFO, handlers=[logfire.LogfireLoggingHandler()])


def instrument_libraries(app: FastAPI, settings: Settings) -> None:
    """Instrument common libraries for better observability."""
    if not settings.logfire_write_token:
        return

    logfire.instrument_fastapi(app)
    if settings.storage_backend == "mongo":
        logfire.instrument_pymongo()
