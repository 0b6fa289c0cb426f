"""Upgrade of the flat single-list document to the multi-service layout."""

import logging
from typing import Any, Dict, Tuple

from keypool.models import RESET_NEVER

logger = logging.getLogger(__name__)


def is_legacy(document: Dict[str, Any]) -> bool:
    return "services" not in document or document["services"] is None


def migrate_legacy(
    document: Dict[str, Any],
    service_name: str,
    host: str,
    default_max_usage: int,
) -> Tuple[Dict[str, Any], bool]:
    """Move a legacy ``{"keys": [...], "maxUsage": n}`` document under one service.

    Returns the migrated document and True, or the untouched document and False
    when it already has a ``services`` map. Key entries are carried over as-is
    so counters and timestamps survive.
    """
    if not is_legacy(document):
        return document, False

    keys = list(document.get("keys") or [])
    max_usage = document.get("maxUsage") or default_max_usage

    migrated = {
        "services": {
            service_name: {
                "host": host,
                "maxUsage": max_usage,
                "resetFrequency": RESET_NEVER,
                "keys": keys,
            }
        },
        "defaultServiceConfig": {
            "maxUsage": max_usage,
            "resetFrequency": RESET_NEVER,
        },
    }

    logger.info(
        "Migrated legacy key list to multi-service format (service=%s, keys=%d)",
        service_name,
        len(keys),
    )
    return migrated, True
