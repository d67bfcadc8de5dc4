from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import ConfigurationError, configuration_issues, get_settings

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    issues = configuration_issues(settings)
    if issues:
        if settings.config_guard_mode == "enforce":
            raise ConfigurationError(
                "configuration guard blocked startup: "
                + "; ".join(issues)
                + ". Remediation: use RECORD_STORE_BACKEND=inmemory and MESSAGING_SENDER_TYPE=stub "
                + "for local runs, or set the required credentials."
            )
        if settings.config_guard_mode == "warn":
            for issue in issues:
                logger.warning("configuration guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.include_router(router)
    return app


app = create_app()
