"""
Redirect Map Loader

Fetches a site's declared redirect rules from /redirects.json and flags the
structural problems that can be seen without touching the live site:
duplicate sources, over-qualified (absolute, same-host) sources, and rules
whose source and destination are the same URL.

Also works out the audit scope: the base URL after following its redirects,
keeping only the part of the requested path that survived.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, replace
from urllib.parse import urlsplit

import requests

from .redirect_checker_utils import get_session, request_headers, request_timeout
from .url_utils import (
    ensure_full_url,
    has_protocol,
    same_site_host,
    url_without_path,
    urls_match,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REDIRECTS_FILE = "redirects.json"

# Prefix for every log line, so one audit run can be grepped out of the logs.
LOG_PREFIX = "RedC: Redirect Chains"


@dataclass(frozen=True)
class RedirectEntry:
    """One declared source -> destination rule, as loaded from the map."""

    referenced_by: str
    original_source: str
    original_destination: str
    is_duplicate_source: bool = False
    duplicate_ordinal: int = 0  # 0 = unique, else 1-based among same-source rules
    is_over_qualified: bool = False
    has_identical_source_and_destination: bool = False

    def as_dict(self):
        return asdict(self)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_redirect_map(base_url, session=None):
    """
    Load and pre-process {base_url}/redirects.json.

    Returns a list of RedirectEntry sorted by source. Never raises for
    transport problems: a missing, unreachable or malformed file yields [].

    If `base_url` has a sub-path and no map is found there, the site root is
    tried next; entries are then limited to sources inside that sub-path.
    """
    session = session or get_session()
    scope_url = base_url.rstrip("/")
    redirects_url = f"{scope_url}/{REDIRECTS_FILE}"
    logger.info("%s - Looking for redirects file at: %s", LOG_PREFIX, redirects_url)
    payload = fetch_json(redirects_url, session)

    if not _has_rows(payload):
        root_url = url_without_path(scope_url)
        if root_url != scope_url:
            redirects_url = f"{root_url}/{REDIRECTS_FILE}"
            logger.info(
                "%s - Redirects file not found with subpaths, trying fallback at: %s",
                LOG_PREFIX, redirects_url,
            )
            payload = fetch_json(redirects_url, session)

    if not _has_rows(payload):
        logger.info("%s - No redirects file found or file is empty", LOG_PREFIX)
        return []

    rows = payload["data"]
    total = _as_int(payload.get("total"), len(rows))

    # Only part of the file was served: ask for all of it.
    if len(rows) < total:
        payload = fetch_json(f"{redirects_url}?limit={total}", session)
        if not _has_rows(payload):
            logger.warning(
                "%s - Re-fetch of %s with ?limit=%d returned no entries; skipping the map.",
                LOG_PREFIX, redirects_url, total,
            )
            return []
        rows = payload["data"]

    if len(rows) != total:
        logger.warning(
            "%s - Expected %d entries in %s, but found %d.",
            LOG_PREFIX, total, redirects_url, len(rows),
        )

    entries = build_entries(rows, redirects_url, scope_url)
    return filter_to_scope(entries, scope_url)


def fetch_json(url, session=None):
    """
    GET `url` and return the decoded JSON body, or None.

    A 404 simply means the site has no such file and is not logged as an
    error; any other failure is.
    """
    session = session or get_session()
    try:
        resp = session.get(
            url,
            headers=request_headers(accept="application/json"),
            timeout=request_timeout(),
            allow_redirects=True,
        )
    except requests.exceptions.RequestException as exc:
        logger.error("%s - Error trying to get %s: %s", LOG_PREFIX, url, exc)
        return None

    if not resp.ok:
        if resp.status_code != 404:
            logger.error(
                "%s - Error trying to get %s ... HTTP code: %s",
                LOG_PREFIX, url, resp.status_code,
            )
        return None

    try:
        return resp.json()
    except ValueError as exc:
        logger.error("%s - %s did not return valid JSON: %s", LOG_PREFIX, url, exc)
        return None


def build_entries(rows, referenced_by, site_url):
    """
    Turn raw map rows into sorted RedirectEntry records with their
    duplicate / over-qualified / same-source-destination flags set.
    """
    entries = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        entries.append(
            RedirectEntry(
                referenced_by=referenced_by,
                original_source=_as_text(row.get("Source") or row.get("source")),
                original_destination=_as_text(row.get("Destination") or row.get("destination")),
            )
        )

    # Stable sort; duplicate ordinals depend on this order.
    entries.sort(key=lambda e: e.original_source)

    # For k rules sharing a source, the last one wins; the first k-1 are duplicates.
    positions = defaultdict(list)
    for index, entry in enumerate(entries):
        positions[entry.original_source].append(index)
    ordinals = {}
    for indexes in positions.values():
        for ordinal, index in enumerate(indexes[:-1], start=1):
            ordinals[index] = ordinal

    base = url_without_path(site_url)
    flagged = []
    for index, entry in enumerate(entries):
        ordinal = ordinals.get(index, 0)
        flagged.append(
            replace(
                entry,
                is_duplicate_source=ordinal > 0,
                duplicate_ordinal=ordinal,
                is_over_qualified=_is_over_qualified(entry.original_source, site_url),
                has_identical_source_and_destination=_is_same_source_destination(entry, base),
            )
        )
    return flagged


def filter_to_scope(entries, scope_url):
    """
    Keep only entries whose source lies inside the scope URL's sub-path.
    A scope without a sub-path keeps everything.
    """
    scope_url = scope_url.rstrip("/")
    scope_path = urlsplit(scope_url).path
    if not scope_path or scope_path == "/":
        logger.info(
            "%s - No subpath in audit scope URL, returning all %d entries",
            LOG_PREFIX, len(entries),
        )
        return entries

    path_prefix = f"{scope_path}/"
    url_prefix = f"{scope_url}/"
    kept = [
        e for e in entries
        if e.original_source.startswith(path_prefix)
        or (has_protocol(e.original_source) and e.original_source.startswith(url_prefix))
    ]
    logger.info(
        "%s - Filtered entries from %d to %d based on audit scope: %s",
        LOG_PREFIX, len(entries), len(kept), path_prefix,
    )
    return kept


def determine_audit_scope(base_url, session=None):
    """
    Resolve the URL whose /redirects.json should be audited.

    Follows the base URL's redirects, then keeps the longest common run of
    path segments between what was asked for and where we landed:

        https://example.com      -> www.example.com/uk -> https://www.example.com
        https://example.com/fr   -> www.example.com/fr -> https://www.example.com/fr
        https://example.com/a/b  -> www.example.com/a/c -> https://www.example.com/a

    Raises ValueError if `base_url` is not a usable URL. Network failures fall
    back to the base URL itself.
    """
    requested = ensure_full_url(base_url)
    parts = urlsplit(requested)
    if not has_protocol(requested) or parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"Invalid base URL: {base_url!r}")

    session = session or get_session()
    try:
        resp = session.head(
            requested,
            headers=request_headers(),
            timeout=request_timeout(),
            allow_redirects=True,
        )
        resolved = resp.url or requested
    except requests.exceptions.RequestException as exc:
        logger.warning(
            "%s - Could not resolve %s (%s); using it as the audit scope.",
            LOG_PREFIX, requested, exc,
        )
        resolved = requested

    origin = url_without_path(resolved)
    requested_segments = [s for s in parts.path.split("/") if s]
    if not requested_segments:
        return origin

    resolved_segments = [s for s in urlsplit(resolved).path.split("/") if s]
    common = []
    for asked, landed in zip(requested_segments, resolved_segments):
        if asked != landed:
            break
        common.append(asked)

    if common:
        return f"{origin}/{'/'.join(common)}"
    return origin


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _has_rows(payload):
    return (
        isinstance(payload, dict)
        and isinstance(payload.get("data"), list)
        and len(payload["data"]) > 0
    )


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_text(value):
    return value if isinstance(value, str) else ""


def _is_over_qualified(source, site_url):
    return has_protocol(source) and same_site_host(source, site_url)


def _is_same_source_destination(entry, base):
    if not entry.original_destination:
        return False
    return urls_match(
        ensure_full_url(entry.original_source, base),
        ensure_full_url(entry.original_destination, base),
    )
