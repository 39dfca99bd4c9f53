from __future__ import annotations

import os

from finance_core.money import normalize_currency

FALLBACK_CURRENCY = "USD"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./finance_core.db")


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")


def get_log_level() -> str | None:
    return os.getenv("FINANCE_CORE_LOG_LEVEL")


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", FALLBACK_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return FALLBACK_CURRENCY
