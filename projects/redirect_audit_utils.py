"""
Redirect Chains Audit

Ties the loader and resolver together and turns their output into findings:

  1. Classify each probe result into at most one problem category.
  2. Attach a suggested fix to every problem.
  3. Group the suggestions under one opportunity and persist them.

Also runs whole audits in a background thread so the HTTP views can return
immediately (progress is kept in the Django cache).
"""

import json
import logging
import math
import threading
import time
import uuid
from dataclasses import asdict, dataclass, replace
from typing import List, Optional

from django.core.cache import cache

from . import opportunity_utils
from .redirect_checker_utils import (
    CHAIN_SEPARATOR,
    MAX_REDIRECT_HOPS,
    ProbeResult,
    get_session,
    resolve_all,
)
from .redirect_map_utils import LOG_PREFIX, determine_audit_scope, load_redirect_map
from .url_utils import is_404_page, url_without_path
from .utils import get_setting

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AUDIT_TYPE = "redirect-chains"
SUGGESTION_TYPE = "REDIRECT_UPDATE"

# More than this many hops is worth a suggestion.
MAX_REDIRECTS_TO_TOLERATE = 1

# Projected traffic model: 20% of issues lose traffic, worth 1 unit each.
TRAFFIC_LOST_PERCENTAGE = 0.20
VALUE_PER_TRAFFIC_LOST = 1

# Issues stored with one audit must fit in this many bytes.
MAX_DB_OBJ_SIZE_BYTES = 400 * 1024

# Must stay in sync with whatever reads the suggestion keys back.
KEY_SEPARATOR = "~|~"

TASK_TTL = 60 * 60

# Problem categories, in precedence order.
DUPLICATE_SOURCE = "duplicate-source"
OVER_QUALIFIED = "over-qualified"
SAME_SOURCE_DESTINATION = "same-source-destination"
HTTP_ERROR = "http-error"
REDIRECTS_TO_404_PAGE = "redirects-to-404-page"
MAX_REDIRECTS_EXCEEDED = "max-redirects-exceeded"
TOO_MANY_REDIRECTS = "too-many-redirects"
DESTINATION_MISMATCH = "destination-mismatch"

PROBLEM_CATEGORIES = (
    DUPLICATE_SOURCE,
    OVER_QUALIFIED,
    SAME_SOURCE_DESTINATION,
    HTTP_ERROR,
    REDIRECTS_TO_404_PAGE,
    MAX_REDIRECTS_EXCEEDED,
    TOO_MANY_REDIRECTS,
    DESTINATION_MISMATCH,
)


@dataclass(frozen=True)
class ClassifiedIssue(ProbeResult):
    """A ProbeResult with exactly one headline problem and its suggested fix."""

    problem_category: str = ""
    fix: str = ""
    fix_type: str = ""
    can_apply_fix_automatically: bool = False
    key: str = ""
    final_url_display: str = ""


@dataclass(frozen=True)
class AggregateCounts:
    duplicate_source: int = 0
    over_qualified: int = 0
    same_source_destination: int = 0
    too_many_redirects: int = 0
    http_errors: int = 0
    redirects_to_404_page: int = 0
    max_redirects_exceeded: int = 0
    destination_mismatch: int = 0
    total_entries_with_problems: int = 0
    projected_traffic_lost: int = 0
    projected_traffic_value: int = 0

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class ClassificationReport:
    counts: AggregateCounts
    issues: List[ClassifiedIssue]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def categorize(result) -> Optional[str]:
    """Headline problem for one probe result, or None if it is fine."""
    if result.is_duplicate_source:
        return DUPLICATE_SOURCE
    if result.is_over_qualified:
        return OVER_QUALIFIED
    if result.has_identical_source_and_destination:
        return SAME_SOURCE_DESTINATION
    if result.final_status_code >= 400:
        return HTTP_ERROR
    if is_404_page(result.final_url or ""):
        return REDIRECTS_TO_404_PAGE
    if result.redirect_hop_count >= MAX_REDIRECT_HOPS:
        return MAX_REDIRECTS_EXCEEDED
    if result.redirect_hop_count > MAX_REDIRECTS_TO_TOLERATE:
        return TOO_MANY_REDIRECTS
    if not result.final_matches_declared_destination:
        return DESTINATION_MISMATCH
    return None


def classify_results(results) -> ClassificationReport:
    """
    Assign each probe result at most one problem category and tally counts.

    Duplicate / over-qualified / same-source-destination flags and hop counts
    above the tolerance are counted for every entry, even when a different
    category is the headline; the remaining counters follow the headline.
    """
    tally = dict.fromkeys(
        ("duplicate_source", "over_qualified", "same_source_destination",
         "too_many_redirects", "http_errors", "redirects_to_404_page",
         "max_redirects_exceeded", "destination_mismatch"),
        0,
    )
    headline_counter = {
        HTTP_ERROR: "http_errors",
        REDIRECTS_TO_404_PAGE: "redirects_to_404_page",
        MAX_REDIRECTS_EXCEEDED: "max_redirects_exceeded",
        DESTINATION_MISMATCH: "destination_mismatch",
    }
    issues = []

    for result in results:
        if result.is_duplicate_source:
            tally["duplicate_source"] += 1
        if result.is_over_qualified:
            tally["over_qualified"] += 1
        if result.has_identical_source_and_destination:
            tally["same_source_destination"] += 1
        if result.redirect_hop_count > MAX_REDIRECTS_TO_TOLERATE:
            tally["too_many_redirects"] += 1

        category = categorize(result)
        if category is None:
            continue
        if category in headline_counter:
            tally[headline_counter[category]] += 1
        issues.append(ClassifiedIssue(**_probe_fields(result), problem_category=category))

    lost, value = calculate_projected_metrics(len(issues))
    counts = AggregateCounts(
        **tally,
        total_entries_with_problems=len(issues),
        projected_traffic_lost=lost,
        projected_traffic_value=value,
    )
    return ClassificationReport(counts=counts, issues=issues)


# ---------------------------------------------------------------------------
# Suggested fixes
# ---------------------------------------------------------------------------


def build_unique_key(issue):
    """Stable key for one rule, so repeated audits update the same suggestion."""
    return KEY_SEPARATOR.join(
        (
            issue.referenced_by,
            issue.original_source,
            issue.original_destination,
            str(issue.duplicate_ordinal),
        )
    )


def get_suggested_fix(issue):
    """
    Returns {"fix", "fix_type", "can_apply_fix_automatically", "final_url"}
    for a classified issue, or None when there is nothing to suggest.

    "final_url" is written in the style of the declared destination: if the
    rule used a relative destination, the site's origin is stripped.
    """
    if issue is None:
        return None
    category = getattr(issue, "problem_category", "") or categorize(issue)
    if not category:
        return None

    base_url = url_without_path(issue.referenced_by) if issue.referenced_by else ""
    final_url = issue.final_url or ""
    if (
        base_url
        and issue.full_destination_url.startswith(base_url)
        and final_url.startswith(base_url)
        and not issue.original_destination.startswith(base_url)
    ):
        final_url = final_url[len(base_url):] or "/"
    chain = issue.redirect_chain or issue.full_source_url
    error_msg = issue.error_message or "(not specified)"

    if category == DUPLICATE_SOURCE:
        fix = "Remove this entry since the same Source URL is used later in the redirects file."
        fix_type, automatic = "duplicate-src", True
    elif category == OVER_QUALIFIED:
        fix = (
            "Update the Source URL to use a relative path by removing the base URL: "
            f"{base_url}"
        )
        fix_type, automatic = "too-qualified", True
    elif category == SAME_SOURCE_DESTINATION:
        fix = "Remove this entry since the Source URL is the same as the Destination URL."
        fix_type, automatic = "same-src-dest", True
    elif category == HTTP_ERROR:
        fix = (
            f"Check the URL: {final_url or issue.full_source_url} since it resulted in an "
            "error code. Maybe remove the entry from the redirects file. "
            f"Error message: {error_msg}"
        )
        fix_type, automatic = "manual-check", False
    elif category == REDIRECTS_TO_404_PAGE:
        fix = "Update, or remove, this entry since the Source URL redirects to a 404 page."
        fix_type, automatic = "404-page", False
    elif category == MAX_REDIRECTS_EXCEEDED:
        fix = (
            "Redesign the redirects that start from the Source URL. An excessive number "
            f"of redirects were encountered, likely a loop. Partial redirect chain is: {chain}"
        )
        fix_type, automatic = "max-redirects-exceeded", False
    elif category == TOO_MANY_REDIRECTS:
        fix = (
            "Reduce the redirects that start from the Source URL. There are too many "
            f"redirects to get to the Destination URL. Redirect chain is: {chain}"
        )
        fix_type, automatic = "high-redirect-count", False
    elif issue.final_url and issue.final_url == issue.full_source_url:
        fix = "Remove this entry since the Source URL redirects to itself."
        fix_type, automatic = "src-is-final", True
    else:
        fix = (
            "Replace the Destination URL with the Final URL, since the Source URL "
            "actually redirects to the Final URL."
        )
        fix_type, automatic = "final-mismatch", True

    return {
        "fix": fix,
        "fix_type": fix_type,
        "can_apply_fix_automatically": automatic,
        "final_url": final_url,
    }


def generate_fixes(issues):
    """Attach fix text, fix type, automation flag and key to every issue."""
    fixed = []
    for issue in issues:
        suggestion = get_suggested_fix(issue)
        if suggestion is None:
            continue
        fixed.append(
            replace(
                issue,
                fix=suggestion["fix"],
                fix_type=suggestion["fix_type"],
                can_apply_fix_automatically=suggestion["can_apply_fix_automatically"],
                key=build_unique_key(issue),
                final_url_display=suggestion["final_url"],
            )
        )
    return fixed


def calculate_projected_metrics(total_issues):
    """
    Simple linear model, not an estimate: 20% of issues, rounded half up,
    each worth VALUE_PER_TRAFFIC_LOST. Returns (lost, value).
    """
    lost = int(math.floor(total_issues * TRAFFIC_LOST_PERCENTAGE + 0.5))
    return lost, lost * VALUE_PER_TRAFFIC_LOST


def filter_issues_to_fit_into_space(issues, max_bytes=MAX_DB_OBJ_SIZE_BYTES):
    """
    Trim `issues` so their JSON fits in `max_bytes`, sharing the room fairly
    between problem categories. Returns (issues, was_reduced).
    """
    if not issues:
        return [], False

    sizes = [_json_size(issue.as_dict()) for issue in issues]
    total_size = sum(sizes)
    if total_size <= max_bytes:
        logger.info(
            "%s - All %d issues fit within %d KB limit (%d KB used)",
            LOG_PREFIX, len(issues), max_bytes // 1024, round(total_size / 1024),
        )
        return list(issues), False

    logger.info(
        "%s - Issues exceed space limit (%d KB > %d KB); filtering to fit",
        LOG_PREFIX, round(total_size / 1024), max_bytes // 1024,
    )

    by_category = {}
    for issue in issues:
        by_category.setdefault(issue.problem_category, []).append(issue)

    # Plan with a pessimistic per-issue size.
    estimate = max(total_size / len(sizes), max(sizes) * 0.8)
    max_issues = int(max_bytes // estimate)
    per_category, remainder = divmod(max_issues, len(by_category))

    kept = []
    for index, (category, members) in enumerate(by_category.items()):
        slots = per_category + (1 if index < remainder else 0)
        take = min(slots, len(members))
        kept.extend(members[:take])
        logger.info(
            "%s - category '%s' - selected %d out of %d issues",
            LOG_PREFIX, category, take, len(members),
        )
    return kept, True


# ---------------------------------------------------------------------------
# Audit runner and post-processing
# ---------------------------------------------------------------------------


def redirects_audit_runner(base_url, session=None):
    """
    Run the redirect-chains audit for one site.

    Returns {"full_audit_ref": ..., "audit_result": {...}}. Never raises for
    network trouble; an unusable `base_url` gives success=False with an
    "INVALID URL" reason and no requests are made.
    """
    started = time.monotonic()
    audit_result = {
        "success": True,
        "reasons": [{"value": "File /redirects.json checked."}],
        "details": {"issues": []},
        "audit_scope_url": base_url,
        "counts": AggregateCounts().as_dict(),
    }
    logger.info("%s - Original base URL: %s", LOG_PREFIX, base_url)

    try:
        scope_url = determine_audit_scope(base_url, session or get_session())
    except ValueError as exc:
        logger.error("%s - Failed to determine the audit scope URL: %s", LOG_PREFIX, exc)
        audit_result["success"] = False
        audit_result["reasons"] = [{"value": base_url, "error": "INVALID URL"}]
        return {"full_audit_ref": base_url, "audit_result": audit_result}

    session = session or get_session()
    audit_result["audit_scope_url"] = scope_url
    logger.info("%s - Audit's scope URL determined: %s", LOG_PREFIX, scope_url)

    entries = load_redirect_map(scope_url, session)
    results = resolve_all(entries, url_without_path(scope_url), session)
    report = classify_results(results)
    issues, was_reduced = filter_issues_to_fit_into_space(generate_fixes(report.issues))
    if was_reduced:
        logger.warning(
            "%s - Issues reduced from %d to %d to fit within space limit",
            LOG_PREFIX, len(report.issues), len(issues),
        )

    audit_result["details"]["issues"] = [issue.as_dict() for issue in issues]
    audit_result["counts"] = report.counts.as_dict()
    _log_stats(len(entries), report.counts)
    logger.info(
        "%s - DONE with /redirects.json for %s. Completed in %.2f seconds.",
        LOG_PREFIX, scope_url, time.monotonic() - started,
    )
    return {"full_audit_ref": scope_url, "audit_result": audit_result}


def generate_suggested_fixes(audit_url, audit_data):
    """Add a JSON-ready `suggestions` list built from the audit's issues."""
    audit_result = (audit_data or {}).get("audit_result") or {}
    issues = (audit_result.get("details") or {}).get("issues") or []
    scope_url = audit_result.get("audit_scope_url") or audit_url
    logger.info(
        "%s - Generating suggestions for URL %s which has %d affected entries.",
        LOG_PREFIX, scope_url, len(issues),
    )

    suggestions = [_to_suggestion(issue) for issue in issues]
    logger.info("%s - Generated %d suggested fixes.", LOG_PREFIX, len(suggestions))

    size_kb = max(1, round(_json_size(suggestions) / 1024))
    if size_kb * 1024 >= MAX_DB_OBJ_SIZE_BYTES:
        logger.warning(
            "%s - Total size of all suggestions (%d KB) is too large for the database!",
            LOG_PREFIX, size_kb,
        )
    return {**(audit_data or {}), "suggestions": suggestions}


def generate_opportunity(audit_url, audit_data, store, queue=None):
    """
    Persist one opportunity holding every suggestion, then forward it.

    Skipped (no persistence call at all) when the audit failed or produced
    no suggestions. Persistence and forwarding errors propagate.
    """
    audit_result = audit_data.get("audit_result") or {}
    scope_url = audit_result.get("audit_scope_url") or audit_url

    if audit_result.get("success") is False:
        logger.info("%s - Audit itself failed, skipping opportunity creation", LOG_PREFIX)
        return dict(audit_data)

    suggestions = audit_data.get("suggestions") or []
    if not suggestions:
        logger.info("%s - No suggested fixes found, skipping opportunity creation", LOG_PREFIX)
        return dict(audit_data)

    lost, value = calculate_projected_metrics(len(suggestions))
    logger.info(
        "%s - Projected traffic: %d lost, %d value for %d issues",
        LOG_PREFIX, lost, value, len(suggestions),
    )

    opportunity = opportunity_utils.convert_to_opportunity(
        audit_url,
        audit_data,
        opportunity_utils.create_opportunity_data,
        AUDIT_TYPE,
        store,
        {
            "projected_traffic_lost": lost,
            "projected_traffic_value": value,
            "audit_scope_url": scope_url,
        },
    )
    synced = opportunity_utils.sync_suggestions(
        opportunity=opportunity,
        new_data=suggestions,
        store=store,
        build_key=lambda item: item["key"],
        map_new_suggestion=lambda item: {
            "opportunity_id": opportunity.id,
            "type": SUGGESTION_TYPE,
            "rank": 0,
            "data": item,
        },
    )
    if queue is not None:
        opportunity_utils.forward_to_enrichment(queue, opportunity, synced)

    return {**audit_data, "opportunity_id": opportunity.id}


def run_redirect_chains_audit(base_url, store, session=None, queue=None):
    """Runner -> suggested fixes -> opportunity, as one call."""
    audit_data = redirects_audit_runner(base_url, session)
    audit_data = generate_suggested_fixes(base_url, audit_data)
    return generate_opportunity(base_url, audit_data, store, queue)


# ---------------------------------------------------------------------------
#  Async Task Management (Thread + Cache)
# ---------------------------------------------------------------------------


def start_redirect_audit_task(url, store=None):
    """
    Starts a background thread that runs the full audit for `url`.
    Returns: task_id (str)
    """
    task_id = str(uuid.uuid4())
    _update_task(task_id, status="queued", url=url, result=None, error=None)

    def worker():
        try:
            _update_task(task_id, status="processing")
            audit_data = run_redirect_chains_audit(
                url, store or opportunity_utils.CacheOpportunityStore()
            )
            audit_result = audit_data["audit_result"]
            if not audit_result["success"]:
                _update_task(task_id, status="error", error="Please enter a valid website URL.")
                return
            _update_task(
                task_id,
                status="done",
                result={
                    "audit_scope_url": audit_result["audit_scope_url"],
                    "counts": audit_result["counts"],
                    "suggestions": audit_data.get("suggestions", []),
                    "opportunity_id": audit_data.get("opportunity_id"),
                },
            )
        except Exception as e:
            logger.exception("Redirect audit task %s failed", task_id)
            _update_task(task_id, status="error", error=f"Internal Server Error: {e}")

    thread = threading.Thread(target=worker, daemon=True, name=f"redirect-audit-{task_id[:8]}")
    thread.start()
    return task_id


def get_redirect_audit_task(task_id):
    """Retrieves the current state of a task from the cache."""
    return cache.get(_task_key(task_id))


def _update_task(task_id, **kwargs):
    key = _task_key(task_id)
    data = cache.get(key) or {}
    data.update(kwargs)
    cache.set(key, data, get_setting("REDIRECT_AUDIT_TASK_TTL", TASK_TTL))


def _task_key(task_id):
    return f"redirect_audit_task_{task_id}"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _probe_fields(result):
    return {name: getattr(result, name) for name in ProbeResult.__dataclass_fields__}


def _to_suggestion(issue):
    """Issue dict (as stored in the audit result) -> suggestion payload."""
    chain_path = issue.get("redirect_chain_path") or []
    return {
        "key": issue["key"],
        "problem_category": issue["problem_category"],
        "fix_type": issue["fix_type"],
        "fix": issue["fix"],
        "can_apply_fix_automatically": issue["can_apply_fix_automatically"],
        "redirects_file": issue["referenced_by"],
        "redirect_count": issue["redirect_hop_count"],
        "http_status_code": issue["final_status_code"],
        "source_url": issue["original_source"],
        "source_url_full": issue["full_source_url"],
        "destination_url": issue["original_destination"],
        "destination_url_full": issue["full_destination_url"],
        "final_url": issue["final_url_display"],
        "final_url_full": issue["final_url"] or "",
        "ordinal_duplicate": issue["duplicate_ordinal"],
        "redirect_chain": CHAIN_SEPARATOR.join(chain_path) or issue["full_source_url"],
        "error_msg": issue["error_message"] or "",
    }


def _json_size(obj):
    return len(json.dumps(obj, default=str).encode("utf-8"))


def _log_stats(total_entries, counts):
    logger.info("%s - STATS: entries checked: %d", LOG_PREFIX, total_entries)
    logger.info(
        "%s - STATS: entries with problems: %d", LOG_PREFIX, counts.total_entries_with_problems
    )
    if counts.total_entries_with_problems:
        for name, value in counts.as_dict().items():
            logger.info("%s - STATS: .. %s: %d", LOG_PREFIX, name, value)
