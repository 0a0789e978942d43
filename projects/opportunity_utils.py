"""
Opportunity Store

An audit's findings are grouped into one "opportunity" per (site, audit
type); each finding is a suggestion under it. Re-running an audit updates
the same opportunity and reconciles its suggestions by key instead of
piling up duplicates.

The default store keeps everything in the Django cache. Anything with the
same four methods (see CacheOpportunityStore) can be passed instead.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from django.core.cache import caches

from .utils import get_setting

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ORIGIN_AUTOMATION = "AUTOMATION"
UPDATED_BY_SYSTEM = "system"

STATUS_NEW = "NEW"
STATUS_OUTDATED = "OUTDATED"
STATUS_FIXED = "FIXED"
STATUS_SKIPPED = "SKIPPED"
STATUS_ERROR = "ERROR"

# Suggestions in these states are left alone when their key disappears.
_KEEP_STATUS_ON_REMOVAL = {STATUS_OUTDATED, STATUS_FIXED, STATUS_SKIPPED, STATUS_ERROR}

RUNBOOK_URL = ""
ENRICHMENT_QUEUE = "redirect-chains-enrichment"


class OpportunityError(Exception):
    """Raised when an opportunity cannot be created or updated."""


@dataclass
class Opportunity:
    id: str
    site_url: str
    audit_type: str
    audit_id: Optional[str] = None
    status: str = STATUS_NEW
    runbook: str = ""
    origin: str = ORIGIN_AUTOMATION
    title: str = ""
    description: str = ""
    guidance: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    updated_by: str = UPDATED_BY_SYSTEM
    updated_at: Optional[str] = None


@dataclass
class Suggestion:
    id: str
    opportunity_id: str
    type: str
    rank: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_NEW
    updated_by: str = UPDATED_BY_SYSTEM


class CacheOpportunityStore:
    """
    Opportunity/suggestion persistence on top of a Django cache alias.

    Entries never expire unless `timeout` is given.
    """

    def __init__(self, alias="default", timeout=None):
        self.cache = caches[alias]
        self.timeout = timeout

    def find_open_opportunity(self, site_url, audit_type):
        opportunity = self.cache.get(self._opportunity_key(site_url, audit_type))
        if opportunity is not None and opportunity.status == STATUS_NEW:
            return opportunity
        return None

    def save_opportunity(self, opportunity):
        self.cache.set(
            self._opportunity_key(opportunity.site_url, opportunity.audit_type),
            opportunity,
            self.timeout,
        )
        return opportunity

    def get_suggestions(self, opportunity_id):
        return list(self.cache.get(self._suggestions_key(opportunity_id)) or [])

    def save_suggestions(self, opportunity_id, suggestions):
        self.cache.set(self._suggestions_key(opportunity_id), list(suggestions), self.timeout)

    @staticmethod
    def _opportunity_key(site_url, audit_type):
        return f"opportunity:{audit_type}:{site_url}"

    @staticmethod
    def _suggestions_key(opportunity_id):
        return f"opportunity:{opportunity_id}:suggestions"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def create_opportunity_data(projected_traffic_metrics=None):
    metrics = projected_traffic_metrics or {}
    return {
        "runbook": get_setting("REDIRECT_AUDIT_RUNBOOK_URL", RUNBOOK_URL),
        "origin": ORIGIN_AUTOMATION,
        "title": "Redirect issues found with the /redirects.json file",
        "description": (
            "This audit identifies issues with the /redirects.json file that may be "
            "causing unnecessary redirects, redirect loops, or broken destinations."
        ),
        "guidance": {
            "steps": [
                "For each entry, check if the redirect is valid and still needed.",
                "Apply the suggested fix, or remove the entry if it is no longer used.",
                "Re-run the audit to confirm the issue is resolved.",
            ],
        },
        "tags": ["Traffic Acquisition"],
        "data": {
            "data_sources": ["Site"],
            "projected_traffic_lost": metrics.get("projected_traffic_lost", 0),
            "projected_traffic_value": metrics.get("projected_traffic_value", 0),
        },
    }


def convert_to_opportunity(
    audit_url, audit_data, opportunity_data, audit_type, store, traffic_metrics=None
):
    """
    Create the opportunity for (audit_url, audit_type), or update the open one.

    `opportunity_data` is either the field dict or a callable that builds it
    from `traffic_metrics` (e.g. create_opportunity_data).
    """
    if callable(opportunity_data):
        opportunity_data = opportunity_data(traffic_metrics)
    fields = dict(opportunity_data)
    audit_id = (audit_data or {}).get("id")

    try:
        opportunity = store.find_open_opportunity(audit_url, audit_type)
        if opportunity is None:
            opportunity = Opportunity(
                id=str(uuid.uuid4()),
                site_url=audit_url,
                audit_type=audit_type,
                audit_id=audit_id,
                **fields,
            )
            logger.info("Creating %s opportunity %s for %s", audit_type, opportunity.id, audit_url)
        else:
            for name, value in fields.items():
                if name == "data":
                    value = {**opportunity.data, **value}
                setattr(opportunity, name, value)
            opportunity.audit_id = audit_id
            opportunity.updated_by = UPDATED_BY_SYSTEM
            logger.info("Updating %s opportunity %s for %s", audit_type, opportunity.id, audit_url)

        opportunity.updated_at = datetime.now(timezone.utc).isoformat()
        store.save_opportunity(opportunity)
    except Exception as e:
        logger.error("Failed to create %s opportunity for %s: %s", audit_type, audit_url, e)
        raise OpportunityError(f"Failed to create or update opportunity: {e}") from e

    return opportunity


def sync_suggestions(opportunity, new_data, store, build_key, map_new_suggestion):
    """
    Reconcile the opportunity's stored suggestions with `new_data`.

    - key gone: mark OUTDATED (unless already OUTDATED/FIXED/SKIPPED/ERROR)
    - key kept: merge in the new data; an OUTDATED one is re-opened as NEW
    - key new:  add as NEW via map_new_suggestion(item)

    Returns the full list of suggestions after syncing.
    """
    existing = store.get_suggestions(opportunity.id)
    incoming = {build_key(item): item for item in new_data}

    outdated = 0
    for suggestion in existing:
        key = build_key(suggestion.data)
        item = incoming.get(key)
        if item is None:
            if suggestion.status not in _KEEP_STATUS_ON_REMOVAL:
                suggestion.status = STATUS_OUTDATED
                suggestion.updated_by = UPDATED_BY_SYSTEM
                outdated += 1
            continue
        suggestion.data = {**suggestion.data, **item}
        suggestion.updated_by = UPDATED_BY_SYSTEM
        if suggestion.status == STATUS_OUTDATED:
            logger.warning(
                "Resolved suggestion found in audit. Possible regression. Suggestion %s: %s",
                suggestion.id, key,
            )
            suggestion.status = STATUS_NEW

    existing_keys = {build_key(s.data) for s in existing}
    added = []
    for key, item in incoming.items():
        if key in existing_keys:
            continue
        mapped = map_new_suggestion(item)
        added.append(
            Suggestion(
                id=str(uuid.uuid4()),
                opportunity_id=mapped.get("opportunity_id", opportunity.id),
                type=mapped["type"],
                rank=mapped.get("rank", 0),
                data=mapped["data"],
                status=STATUS_NEW,
            )
        )

    synced = existing + added
    store.save_suggestions(opportunity.id, synced)
    logger.info(
        "Synced suggestions for opportunity %s: %d new, %d outdated, %d total",
        opportunity.id, len(added), outdated, len(synced),
    )
    return synced


def forward_to_enrichment(queue, opportunity, suggestions, queue_name=None):
    """Hand the opportunity to downstream enrichment: one message per opportunity."""
    queue_name = queue_name or get_setting("REDIRECT_AUDIT_ENRICHMENT_QUEUE", ENRICHMENT_QUEUE)
    payload = {
        "type": opportunity.audit_type,
        "site_url": opportunity.site_url,
        "audit_id": opportunity.audit_id,
        "opportunity_id": opportunity.id,
        "suggestion_ids": [s.id for s in suggestions if s.status == STATUS_NEW],
    }
    queue.send_message(queue_name, payload)
    logger.info(
        "Forwarded opportunity %s with %d suggestions to %s",
        opportunity.id, len(payload["suggestion_ids"]), queue_name,
    )
