"""Site-name lookup and result shaping shared by the audit functions.

Site names come from the ``get_publisher_site_names`` RPC. Interactive
callers fall back to the ``primary`` site so a publisher without configured
sites still gets audited; the scheduled cron runs in strict mode and skips
such publishers instead.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from mfabuster.deps import run_query, _error_message

logger = logging.getLogger(__name__)

DEFAULT_SITE_NAMES = ["primary"]


def _fallback(strict: bool) -> List[str]:
    return [] if strict else list(DEFAULT_SITE_NAMES)


def extract_site_names(rows: Any) -> List[str]:
    """Pull non-blank ``site_name`` values out of an RPC result."""
    if not isinstance(rows, list):
        return []
    names = []
    for item in rows:
        name = item.get("site_name") if isinstance(item, dict) else None
        if isinstance(name, str) and name.strip():
            names.append(name)
    return names


async def fetch_publisher_site_names(
    supabase,
    publisher_id: str,
    request_id: str,
    strict: bool = False,
) -> List[str]:
    """Return the publisher's site names.

    Args:
        supabase: Service-role client.
        publisher_id: Publisher to look up.
        request_id: Log prefix.
        strict: Return ``[]`` instead of ``["primary"]`` when the lookup
            fails or finds nothing.
    """
    logger.info(f"[{request_id}] Fetching site names for publisher {publisher_id}")
    try:
        response = await run_query(
            lambda: supabase.rpc(
                "get_publisher_site_names", {"p_publisher_id": publisher_id}
            ).execute()
        )
    except APIError as e:
        logger.warning(f"[{request_id}] Error fetching site names: {_error_message(e)}")
        return _fallback(strict)

    site_names = extract_site_names(response.data)
    if not site_names:
        logger.info(
            f"[{request_id}] No site names found for publisher {publisher_id}"
            + ("" if strict else ", using default")
        )
        return _fallback(strict)

    logger.info(f"[{request_id}] Found {len(site_names)} site names: {', '.join(site_names)}")
    return site_names


async def fetch_multiple_publisher_site_names(
    supabase,
    publisher_ids: List[str],
    request_id: str,
) -> Dict[str, List[str]]:
    site_names_map: Dict[str, List[str]] = {}
    for publisher_id in publisher_ids:
        site_names_map[publisher_id] = await fetch_publisher_site_names(
            supabase, publisher_id, request_id
        )
    return site_names_map


def chunk_site_names(site_names: List[str], chunk_size: int) -> List[List[str]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return [site_names[i:i + chunk_size] for i in range(0, len(site_names), chunk_size)]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def aggregate_audit_errors(errors: List[Dict[str, Any]], site_name: str) -> Dict[str, Any]:
    """Collapse several per-site errors into one ``site_name``/``error`` entry."""
    return {
        "site_name": site_name,
        "error": "; ".join(e["error"] for e in errors),
        "timestamp": _timestamp(),
    }


def create_multi_site_audit_result(
    publisher_id: str,
    site_names: List[str],
    successful_sites: List[str],
    failed_sites: List[Dict[str, str]],
) -> Dict[str, Any]:
    errors = [
        {"site_name": fs["name"], "error": fs["error"], "timestamp": _timestamp()}
        for fs in failed_sites
    ]
    failure_by_name: Dict[str, Optional[str]] = {}
    for fs in failed_sites:
        failure_by_name.setdefault(fs["name"], fs["error"])

    sites = []
    for site in site_names:
        entry: Dict[str, Any] = {
            "name": site,
            "status": "success" if site in successful_sites else "failed",
        }
        if site in failure_by_name:
            entry["error"] = failure_by_name[site]
        sites.append(entry)

    return {
        "publisherId": publisher_id,
        "totalSites": len(site_names),
        "successCount": len(successful_sites),
        "failureCount": len(failed_sites),
        "sites": sites,
        "errors": errors,
    }
