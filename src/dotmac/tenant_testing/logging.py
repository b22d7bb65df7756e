"""
Structured logging setup for the tenant test harness using structlog directly.
"""

import logging

import structlog

from dotmac.tenant_testing.settings import LogFormat, TenancyTestSettings

_configured = False


def setup_logging(settings: TenancyTestSettings | None = None, *, force: bool = False) -> None:
    """
    Setup structured logging with structlog.

    Safe to call once per worker; later calls are ignored unless ``force`` is set
    so a host application's own structlog configuration is not clobbered.
    """
    global _configured
    if _configured and not force:
        return

    settings = settings or TenancyTestSettings()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.getLogger("dotmac.tenant_testing").setLevel(settings.log_level)
    _configured = True

