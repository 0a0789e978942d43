"""
Redirect Chain Resolver

Probes each declared redirect rule against the live site. A quick HEAD that
follows redirects tells us where the source ends up; if it was redirected we
walk the chain again hop-by-hop to count the hops, stopping hard at
MAX_REDIRECT_HOPS so a redirect loop can't keep us busy.

Rules are probed on a bounded thread pool; results come back in input order.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from typing import Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .url_utils import ensure_full_url, url_without_path, urls_match
from .utils import get_setting

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Hard stop for the hop-by-hop walk. The request for hop N+1 is never sent.
MAX_REDIRECT_HOPS = 5

# Default per-request timeout in seconds.
REQUEST_TIMEOUT = 15

# Default number of rules probed at once.
MAX_CONCURRENT_PROBES = 10

# Internal marker for "the probe itself failed" (never a real response here).
PROBE_FAILED_STATUS = 418

USER_AGENT = "Mozilla/5.0 (compatible; RedirectChainAudit/1.0)"

# Any 3xx with a Location header is followed.
REDIRECT_STATUS_RANGE = range(300, 400)

# Separator used when a chain is rendered as text.
CHAIN_SEPARATOR = " -> "


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of resolving one RedirectEntry against the live site."""

    referenced_by: str
    original_source: str
    original_destination: str
    is_duplicate_source: bool = False
    duplicate_ordinal: int = 0
    is_over_qualified: bool = False
    has_identical_source_and_destination: bool = False
    full_source_url: str = ""
    full_destination_url: str = ""
    final_url: Optional[str] = None
    final_status_code: int = 200
    was_redirected: bool = False
    redirect_hop_count: int = 0
    redirect_chain_path: Tuple[str, ...] = field(default_factory=tuple)
    final_matches_declared_destination: bool = False
    error_message: Optional[str] = None

    @property
    def redirect_chain(self):
        return CHAIN_SEPARATOR.join(self.redirect_chain_path)

    def as_dict(self):
        data = asdict(self)
        data["redirect_chain_path"] = list(self.redirect_chain_path)
        return data


# ---------------------------------------------------------------------------
# HTTP session pool (lazy)
# ---------------------------------------------------------------------------
_POOL: Optional[requests.Session] = None
_POOL_LOCK = threading.Lock()


def get_session():
    """Shared pooled Session. Retries connection failures only, never statuses."""
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            pool_size = max(16, int(max_workers()) * 2)
            sess = requests.Session()
            retry = Retry(
                total=2, connect=2, read=0, status=0,
                backoff_factor=0.3,
                allowed_methods={"GET", "HEAD"},
                raise_on_status=False,
            )
            adapter = HTTPAdapter(
                pool_connections=pool_size, pool_maxsize=pool_size, max_retries=retry
            )
            sess.mount("http://", adapter)
            sess.mount("https://", adapter)
            _POOL = sess
        return _POOL


def request_headers(accept="*/*"):
    return {
        "User-Agent": get_setting("REDIRECT_AUDIT_USER_AGENT", USER_AGENT),
        "Accept": accept,
    }


def request_timeout():
    return get_setting("REDIRECT_AUDIT_REQUEST_TIMEOUT", REQUEST_TIMEOUT)


def max_workers():
    return get_setting("REDIRECT_AUDIT_MAX_WORKERS", MAX_CONCURRENT_PROBES)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_all(entries, base_url, session=None, workers=None):
    """
    Probe every entry and return one ProbeResult per entry, in input order.

    At most `workers` probes are in flight at a time; a failing entry only
    records its own error.
    """
    entries = list(entries)
    if not entries:
        return []

    session = session or get_session()
    workers = max(1, int(workers or max_workers()))
    base = url_without_path(ensure_full_url(base_url))

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="redirect-probe") as pool:
        results = list(pool.map(lambda e: resolve_entry(e, base, session), entries))

    logger.info(
        "Probed %d redirect entries against %s with %d workers",
        len(results), base, workers,
    )
    return results


def resolve_entry(entry, base_url, session=None):
    """
    Resolve a single RedirectEntry. Never raises for HTTP or network problems;
    they end up in `error_message` / `final_status_code`.
    """
    session = session or get_session()
    full_source = ensure_full_url(entry.original_source, base_url)
    if entry.original_destination:
        full_destination = ensure_full_url(entry.original_destination, base_url)
    else:
        # No destination: just check that the source itself resolves.
        full_destination = full_source

    result = ProbeResult(
        referenced_by=entry.referenced_by,
        original_source=entry.original_source,
        original_destination=entry.original_destination,
        is_duplicate_source=entry.is_duplicate_source,
        duplicate_ordinal=entry.duplicate_ordinal,
        is_over_qualified=entry.is_over_qualified,
        has_identical_source_and_destination=entry.has_identical_source_and_destination,
        full_source_url=full_source,
        full_destination_url=full_destination,
        final_url=full_source,
    )

    # Duplicates are a problem in the file, not on the site. Don't probe.
    if entry.is_duplicate_source:
        return replace(result, error_message=f"Duplicated source URL: {entry.original_source}")

    loop_detected = False
    try:
        resp = session.head(
            full_source,
            headers=request_headers(),
            timeout=request_timeout(),
            allow_redirects=True,
        )
    except requests.exceptions.TooManyRedirects:
        # The client gave up first; the hop-by-hop walk below will bound it.
        loop_detected = True
    except requests.exceptions.RequestException as exc:
        return replace(
            result,
            final_url=None,
            final_status_code=PROBE_FAILED_STATUS,
            error_message=_describe_error(exc, full_source),
        )
    else:
        final_url = resp.url or full_source
        status = resp.status_code
        result = replace(
            result,
            final_url=final_url,
            final_status_code=status,
            was_redirected=bool(resp.history) and final_url != full_source,
        )
        if status >= 400:
            return _with_match(
                replace(result, error_message=f"HTTP error {status} for {final_url}")
            )

    if loop_detected or result.was_redirected:
        hops, chain, status, error = count_redirects(full_source, session)
        result = replace(
            result,
            was_redirected=True,
            redirect_hop_count=hops,
            redirect_chain_path=chain,
            final_status_code=status,
            error_message=error,
        )
        if loop_detected:
            result = replace(result, final_url=chain[-1])

    return _with_match(result)


def count_redirects(url, session=None, max_hops=MAX_REDIRECT_HOPS):
    """
    Follow the chain from `url` one hop at a time without auto-redirects.

    Returns (hop_count, chain, status_code, error_or_None). `chain` starts
    with `url` and has one URL per hop taken. Once `max_hops` hops have been
    taken we stop without requesting the next Location. On a network error
    the partial count and chain are returned with PROBE_FAILED_STATUS.
    """
    session = session or get_session()
    current_url = url
    chain = [url]
    hops = 0

    try:
        resp = _fetch_hop(session, current_url)
        while resp.status_code in REDIRECT_STATUS_RANGE:
            if hops >= max_hops:
                break
            location = resp.headers.get("Location")
            if not location:
                break
            # Location may be relative to the URL that returned it.
            current_url = urljoin(current_url, location.strip())
            hops += 1
            chain.append(current_url)
            resp = _fetch_hop(session, current_url)
    except requests.exceptions.RequestException as exc:
        return hops, tuple(chain), PROBE_FAILED_STATUS, _describe_error(exc, current_url)

    error = None
    if resp.status_code >= 400:
        error = f"HTTP error {resp.status_code} for {current_url}"
    return hops, tuple(chain), resp.status_code, error


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _fetch_hop(session, url):
    """Single HEAD request that does NOT follow redirects."""
    return session.head(
        url,
        headers=request_headers(),
        timeout=request_timeout(),
        allow_redirects=False,
    )


def _with_match(result):
    matches = bool(result.final_url) and urls_match(
        result.final_url, result.full_destination_url
    )
    return replace(result, final_matches_declared_destination=matches)


def _describe_error(exc, url):
    """Short, human-readable description of a requests failure."""
    if isinstance(exc, requests.exceptions.Timeout):
        return f"Network error: request timed out after {request_timeout()}s."
    if isinstance(exc, requests.exceptions.SSLError):
        return f"Network error: SSL/TLS error: {_truncate(str(exc), 200)}"
    if isinstance(exc, requests.exceptions.ConnectionError):
        err_str = str(exc)
        if "NameResolutionError" in err_str or "getaddrinfo" in err_str:
            return f"Network error: DNS resolution failed for {urlparse(url).hostname}."
        return f"Network error: connection error: {_truncate(err_str, 200)}"
    return f"Network error: {_truncate(str(exc), 200)}"


def _truncate(text, max_length):
    """Truncate a string and append '…' if it exceeds max_length."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 1] + "…"
