"""Environment redaction for spawned shell processes."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from shellpilot.config import SanitizationConfig

logger = logging.getLogger(__name__)

ALLOWED_PREFIX = "SHELLPILOT_"

ALWAYS_ALLOWED_ENVIRONMENT_VARIABLES: frozenset[str] = frozenset(
    {
        # Cross-platform
        "PATH",
        # Windows
        "SYSTEMROOT",
        "COMSPEC",
        "PATHEXT",
        "WINDIR",
        "TEMP",
        "TMP",
        "USERPROFILE",
        "SYSTEMDRIVE",
        # Unix
        "HOME",
        "LANG",
        "SHELL",
        "TMPDIR",
        "USER",
        "LOGNAME",
        "TERM",
        "COLORTERM",
        "LC_ALL",
        "LC_CTYPE",
    }
)

NEVER_ALLOWED_ENVIRONMENT_VARIABLES: frozenset[str] = frozenset(
    {
        "CLIENT_ID",
        "DB_URI",
        "CONNECTION_STRING",
        "AWS_DEFAULT_REGION",
        "AZURE_CLIENT_ID",
        "AZURE_TENANT_ID",
        "SLACK_WEBHOOK_URL",
        "TWILIO_ACCOUNT_SID",
        "DATABASE_URL",
        "GOOGLE_CLOUD_PROJECT",
        "GOOGLE_CLOUD_ACCOUNT",
        "FIREBASE_PROJECT_ID",
    }
)

NEVER_ALLOWED_NAME_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"TOKEN",
        r"SECRET",
        r"PASSWORD",
        r"PASSWD",
        r"KEY",
        r"AUTH",
        r"CREDENTIAL",
        r"CREDS",
        r"PRIVATE",
        r"CERT",
    )
)

NEVER_ALLOWED_VALUE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"-----BEGIN (RSA|OPENSSH|EC|PGP) PRIVATE KEY-----",
        r"-----BEGIN CERTIFICATE-----",
        r"(https?|ftp|smtp)://[^:\s/]+:[^@\s]+@",
        r"(ghp|gho|ghu|ghs|ghr|github_pat)_[a-zA-Z0-9_]{36,}",
        r"AIzaSy[a-zA-Z0-9_\-]{33}",
        r"AKIA[A-Z0-9]{16}",
        r"eyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+",
        r"xox[abpr]-[a-zA-Z0-9\-]+",
        r"(bearer|basic)\s+[a-zA-Z0-9+/=._\-]{16,}",
    )
)


def _should_redact(name: str, value: str, allowed: set[str], blocked: set[str]) -> bool:
    upper = name.upper()

    if upper in allowed:
        return False
    if upper in blocked:
        return True
    if upper in ALWAYS_ALLOWED_ENVIRONMENT_VARIABLES or upper.startswith(ALLOWED_PREFIX):
        return False
    if upper in NEVER_ALLOWED_ENVIRONMENT_VARIABLES:
        return True
    if any(pattern.search(name) for pattern in NEVER_ALLOWED_NAME_PATTERNS):
        return True
    return any(pattern.search(value) for pattern in NEVER_ALLOWED_VALUE_PATTERNS)


def sanitize_environment(
    env: Mapping[str, str | None],
    config: SanitizationConfig,
) -> dict[str, str]:
    """Return a copy of ``env`` with secret-looking variables removed.

    User-allowed names win over user-blocked names. Names are compared
    case-insensitively. ``None`` values are dropped.
    """
    if not config.enable_environment_variable_redaction:
        return {k: v for k, v in env.items() if v is not None}

    allowed = {name.upper() for name in config.allowed_environment_variables}
    blocked = {name.upper() for name in config.blocked_environment_variables}

    sanitized: dict[str, str] = {}
    for name, value in env.items():
        if value is None:
            continue
        if _should_redact(name, value, allowed, blocked):
            logger.debug("Redacted environment variable %s", name)
            continue
        sanitized[name] = value
    return sanitized
