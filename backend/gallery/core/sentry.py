from __future__ import annotations

import logging
from typing import Any

from gallery.core.config import Settings, settings as default_settings

# Caller mistakes and contention; these are answered with a 4xx and never reported.
_EXPECTED_ERROR_CODES = frozenset({"invalid_argument", "already_in_progress", "asset_not_found"})


def drop_expected_errors(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    exc_info = hint.get("exc_info")
    if exc_info and getattr(exc_info[1], "code", None) in _EXPECTED_ERROR_CODES:
        return None
    return event


def init_sentry(config: Settings | None = None) -> bool:
    """Start the Sentry SDK when a DSN is configured; returns whether it was started."""
    cfg = config or default_settings
    if not cfg.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations = [FastApiIntegration(), SqlalchemyIntegration(), AsyncioIntegration()]
    if cfg.sentry_enable_logs:
        level = logging.getLevelName(str(cfg.sentry_log_level or "error").strip().upper())
        if not isinstance(level, int):
            level = logging.ERROR
        integrations.append(LoggingIntegration(level=logging.INFO, event_level=level))

    sentry_sdk.init(
        dsn=cfg.sentry_dsn,
        environment=cfg.environment,
        release=f"{cfg.app_name}@{cfg.app_version}",
        traces_sample_rate=cfg.sentry_traces_sample_rate,
        integrations=integrations,
        before_send=drop_expected_errors,
        send_default_pii=False,
    )
    sentry_sdk.set_tag("media.storage_backend", cfg.media_storage_backend)
    return True
