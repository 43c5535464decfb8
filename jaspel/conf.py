"""
Engine settings with their defaults.

Values are read from Django settings at access time so tests can use
``override_settings``.
"""
from datetime import time
from decimal import Decimal
from django.conf import settings

DEFAULTS = {
    "JASPEL_PRODUCTION_MODE": False,
    "JASPEL_MAX_NOMINAL": Decimal("10000000"),
    "JASPEL_DATE_PAST_DAYS": 365,
    "JASPEL_DATE_FUTURE_DAYS": 7,
    "JASPEL_RETENTION_DAYS": 30,
    "JASPEL_RAPID_CREATION_WINDOW": 300,
    "JASPEL_RAPID_CREATION_LIMIT": 5,
    "JASPEL_CREATION_ALERT_LIMIT": 20,
    "JASPEL_DUMMY_PATTERNS": (123456, 234567, 345678, 456789, 111111, 222222, 333333),
    "JASPEL_HIGH_DAILY_TOTAL": Decimal("5000000"),
    "JASPEL_STATS_CACHE_TTL": 3600,
    "JASPEL_SUMMARY_CACHE_TTL": 600,
    "JASPEL_COUNTER_CACHE_TTL": 300,
    "JASPEL_SHIFT_WINDOWS": {
        "morning": (time(7, 0), time(14, 0)),
        "afternoon": (time(14, 0), time(21, 0)),
    },
    "JASPEL_FALLBACK_SHIFT": "morning",
    "JASPEL_FORMULA_CLOCK": "execution",
    "JASPEL_SETTLEMENT_MAX_ATTEMPTS": 3,
    "JASPEL_SETTLEMENT_DEADLINE": 300,
    "JASPEL_SETTLEMENT_RETRY_BASE": 10,
    "JASPEL_CURRENCY_QUANTUM": Decimal("0.01"),
}


def get(name):
    return getattr(settings, name, DEFAULTS[name])


def production_mode():
    return bool(get("JASPEL_PRODUCTION_MODE"))


def max_nominal():
    return Decimal(str(get("JASPEL_MAX_NOMINAL")))


def currency_quantum():
    return Decimal(str(get("JASPEL_CURRENCY_QUANTUM")))


def dummy_patterns():
    return {Decimal(str(value)) for value in get("JASPEL_DUMMY_PATTERNS")}
