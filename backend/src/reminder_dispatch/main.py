from __future__ import annotations

from fastapi import FastAPI

from .api import router
from .config import ConfigurationError, get_settings, runtime_config_issues


def create_app() -> FastAPI:
    settings = get_settings()
    issues = runtime_config_issues(settings)
    if issues:
        raise ConfigurationError(
            "reminder dispatch blocked startup: "
            + "; ".join(issues)
            + ". Remediation: set the missing values or switch DATA_STORE_BACKEND/PUSH_TRANSPORT "
            + "back to inmemory/stub."
        )

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.include_router(router)
    return app


app = create_app()
