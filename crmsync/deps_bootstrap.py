"""Import probes for the Google client libraries used by the sync core."""
from __future__ import annotations

import importlib
import logging
from typing import List, Sequence

logger = logging.getLogger(__name__)

GOOGLE_IMPORTS: Sequence[str] = (
    "googleapiclient.discovery",
    "googleapiclient.http",
    "googleapiclient.errors",
    "google.oauth2.credentials",
    "google.auth.transport.requests",
    "google_auth_oauthlib.flow",
    "httplib2",
)

_missing_google_imports: List[str] = []


def _try_import(module_name: str) -> bool:
    try:
        importlib.import_module(module_name)
    except (ImportError, FileNotFoundError) as exc:  # pragma: no cover - depends on environment
        logger.debug("[Deps] import error for %s: %s", module_name, exc, exc_info=True)
        return False
    return True


def check_google_deps() -> List[str]:
    """Return the list of missing Google client modules."""

    global _missing_google_imports
    _missing_google_imports = [name for name in GOOGLE_IMPORTS if not _try_import(name)]
    return list(_missing_google_imports)


def ensure_google_deps() -> bool:
    """Verify that the required Google modules are importable."""

    missing = check_google_deps()
    if missing:
        logger.warning("[Deps] Sync module dependencies missing: %s", ", ".join(missing))
        return False
    logger.info("[Deps] Google sync dependencies ready.")
    return True


def missing_dependencies() -> Sequence[str]:
    """Return the last computed list of missing Google modules."""

    return tuple(_missing_google_imports)


__all__ = [
    "GOOGLE_IMPORTS",
    "check_google_deps",
    "ensure_google_deps",
    "missing_dependencies",
]
