import json
from unittest.mock import MagicMock, patch

from django.core.cache import cache
from django.test import RequestFactory, SimpleTestCase

from . import redirect_audit_utils as audit
from .forms import RedirectAuditForm
from .opportunity_utils import OpportunityError
from .redirect_checker_utils import ProbeResult
from .views import redirect_audit_start, redirect_audit_status

SITE = "https://www.example.com"
REDIRECTS_URL = f"{SITE}/redirects.json"


def _result(**overrides):
    fields = dict(
        referenced_by=REDIRECTS_URL,
        original_source="/a",
        original_destination="/b",
        full_source_url=f"{SITE}/a",
        full_destination_url=f"{SITE}/b",
        final_url=f"{SITE}/b",
        final_status_code=200,
        final_matches_declared_destination=True,
    )
    fields.update(overrides)
    return ProbeResult(**fields)


def _resp(status=200, url=None, location=None, history=None, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.url = url
    resp.history = history or []
    resp.headers = {"Location": location} if location else {}
    resp.json.return_value = payload
    return resp


# ===================================================================
#  Classification
# ===================================================================

class CategorizeTests(SimpleTestCase):
    def test_clean_result(self):
        self.assertIsNone(audit.categorize(_result()))

    def test_duplicate_beats_everything(self):
        result = _result(is_duplicate_source=True, final_status_code=500, redirect_hop_count=5)
        self.assertEqual(audit.categorize(result), audit.DUPLICATE_SOURCE)

    def test_over_qualified_beats_same_source_destination(self):
        result = _result(is_over_qualified=True, has_identical_source_and_destination=True)
        self.assertEqual(audit.categorize(result), audit.OVER_QUALIFIED)

    def test_same_source_destination(self):
        result = _result(has_identical_source_and_destination=True, final_status_code=404)
        self.assertEqual(audit.categorize(result), audit.SAME_SOURCE_DESTINATION)

    def test_http_error_beats_404_page(self):
        result = _result(final_url=f"{SITE}/404", final_status_code=404)
        self.assertEqual(audit.categorize(result), audit.HTTP_ERROR)

    def test_probe_failure_is_http_error(self):
        result = _result(final_url=None, final_status_code=418, error_message="Network error: x")
        self.assertEqual(audit.categorize(result), audit.HTTP_ERROR)

    def test_404_page(self):
        result = _result(final_url=f"{SITE}/404.html", final_matches_declared_destination=False)
        self.assertEqual(audit.categorize(result), audit.REDIRECTS_TO_404_PAGE)

    def test_max_redirects_exceeded(self):
        result = _result(redirect_hop_count=5, final_status_code=301)
        self.assertEqual(audit.categorize(result), audit.MAX_REDIRECTS_EXCEEDED)

    def test_too_many_redirects(self):
        result = _result(redirect_hop_count=2)
        self.assertEqual(audit.categorize(result), audit.TOO_MANY_REDIRECTS)

    def test_single_hop_is_tolerated(self):
        self.assertIsNone(audit.categorize(_result(redirect_hop_count=1)))

    def test_destination_mismatch(self):
        result = _result(final_url=f"{SITE}/c", final_matches_declared_destination=False)
        self.assertEqual(audit.categorize(result), audit.DESTINATION_MISMATCH)


class ClassifyResultsTests(SimpleTestCase):
    def test_counts_and_issues(self):
        results = [
            _result(original_source="/dup", is_duplicate_source=True, duplicate_ordinal=1),
            _result(original_source="/ok"),
            _result(original_source="/long", redirect_hop_count=2),
            _result(original_source="/err", redirect_hop_count=3, final_status_code=500),
            _result(
                original_source="/miss",
                final_url=f"{SITE}/c",
                final_matches_declared_destination=False,
            ),
        ]

        report = audit.classify_results(results)

        self.assertEqual(
            [(i.original_source, i.problem_category) for i in report.issues],
            [
                ("/dup", audit.DUPLICATE_SOURCE),
                ("/long", audit.TOO_MANY_REDIRECTS),
                ("/err", audit.HTTP_ERROR),
                ("/miss", audit.DESTINATION_MISMATCH),
            ],
        )
        counts = report.counts
        self.assertEqual(counts.duplicate_source, 1)
        self.assertEqual(counts.too_many_redirects, 2)
        self.assertEqual(counts.http_errors, 1)
        self.assertEqual(counts.destination_mismatch, 1)
        self.assertEqual(counts.total_entries_with_problems, 4)
        self.assertEqual(counts.projected_traffic_lost, 1)

    def test_no_results(self):
        report = audit.classify_results([])
        self.assertEqual(report.issues, [])
        self.assertEqual(report.counts.total_entries_with_problems, 0)


# ===================================================================
#  Suggested fixes
# ===================================================================

class SuggestedFixTests(SimpleTestCase):
    def _fix(self, **overrides):
        issue = audit.classify_results([_result(**overrides)]).issues[0]
        return audit.get_suggested_fix(issue)

    def test_duplicate(self):
        fix = self._fix(is_duplicate_source=True, duplicate_ordinal=1)
        self.assertEqual(fix["fix_type"], "duplicate-src")
        self.assertTrue(fix["can_apply_fix_automatically"])

    def test_over_qualified_names_the_base(self):
        fix = self._fix(is_over_qualified=True, original_source=f"{SITE}/a")
        self.assertEqual(fix["fix_type"], "too-qualified")
        self.assertIn(SITE, fix["fix"])

    def test_http_error_is_manual(self):
        fix = self._fix(final_status_code=500, error_message="HTTP error 500 for x")
        self.assertEqual(fix["fix_type"], "manual-check")
        self.assertFalse(fix["can_apply_fix_automatically"])
        self.assertIn("HTTP error 500 for x", fix["fix"])

    def test_loop_includes_partial_chain(self):
        fix = self._fix(
            redirect_hop_count=5,
            final_status_code=302,
            redirect_chain_path=(f"{SITE}/a", f"{SITE}/b"),
        )
        self.assertEqual(fix["fix_type"], "max-redirects-exceeded")
        self.assertIn(f"{SITE}/a -> {SITE}/b", fix["fix"])
        self.assertFalse(fix["can_apply_fix_automatically"])

    def test_mismatch_final_url_is_relative_like_the_destination(self):
        fix = self._fix(final_url=f"{SITE}/c", final_matches_declared_destination=False)
        self.assertEqual(fix["fix_type"], "final-mismatch")
        self.assertEqual(fix["final_url"], "/c")
        self.assertTrue(fix["can_apply_fix_automatically"])

    def test_mismatch_final_url_stays_absolute_for_absolute_destination(self):
        fix = self._fix(
            original_destination=f"{SITE}/b",
            final_url=f"{SITE}/c",
            final_matches_declared_destination=False,
        )
        self.assertEqual(fix["final_url"], f"{SITE}/c")

    def test_source_is_final(self):
        fix = self._fix(final_url=f"{SITE}/a", final_matches_declared_destination=False)
        self.assertEqual(fix["fix_type"], "src-is-final")

    def test_nothing_to_fix(self):
        self.assertIsNone(audit.get_suggested_fix(_result()))
        self.assertIsNone(audit.get_suggested_fix(None))

    def test_unique_key(self):
        issue = _result(duplicate_ordinal=2)
        self.assertEqual(
            audit.build_unique_key(issue), f"{REDIRECTS_URL}~|~/a~|~/b~|~2"
        )


class ProjectedMetricsTests(SimpleTestCase):
    def test_rounds_half_up(self):
        self.assertEqual(audit.calculate_projected_metrics(148), (30, 30))
        self.assertEqual(audit.calculate_projected_metrics(5), (1, 1))
        self.assertEqual(audit.calculate_projected_metrics(2), (0, 0))
        self.assertEqual(audit.calculate_projected_metrics(0), (0, 0))


class FilterIssuesToFitTests(SimpleTestCase):
    def _issues(self):
        results = []
        for i in range(10):
            results.append(_result(original_source=f"/dup{i}", is_duplicate_source=True))
            results.append(_result(original_source=f"/err{i}", final_status_code=500))
            results.append(_result(original_source=f"/long{i}", redirect_hop_count=2))
        return audit.generate_fixes(audit.classify_results(results).issues)

    def test_small_lists_are_untouched(self):
        issues = self._issues()
        kept, was_reduced = audit.filter_issues_to_fit_into_space(issues)
        self.assertFalse(was_reduced)
        self.assertEqual(len(kept), 30)

    def test_every_category_keeps_a_share(self):
        issues = self._issues()
        biggest = max(len(json.dumps(i.as_dict())) for i in issues)

        kept, was_reduced = audit.filter_issues_to_fit_into_space(issues, max_bytes=biggest * 6)

        self.assertTrue(was_reduced)
        self.assertLess(len(kept), 30)
        self.assertEqual(
            {i.problem_category for i in kept},
            {audit.DUPLICATE_SOURCE, audit.HTTP_ERROR, audit.TOO_MANY_REDIRECTS},
        )

    def test_empty(self):
        self.assertEqual(audit.filter_issues_to_fit_into_space([]), ([], False))


# ===================================================================
#  Opportunity generation
# ===================================================================

class GenerateOpportunityTests(SimpleTestCase):
    def _audit_data(self, success=True, suggestions=None):
        return {
            "full_audit_ref": SITE,
            "audit_result": {"success": success, "audit_scope_url": SITE},
            "suggestions": suggestions if suggestions is not None else [],
        }

    def _store(self):
        store = MagicMock()
        store.find_open_opportunity.return_value = None
        store.get_suggestions.return_value = []
        return store

    def test_failed_audit_skips_persistence(self):
        store = self._store()
        audit.generate_opportunity(SITE, self._audit_data(success=False), store)
        self.assertEqual(store.method_calls, [])

    def test_no_suggestions_skips_persistence(self):
        store = self._store()
        audit.generate_opportunity(SITE, self._audit_data(), store)
        self.assertEqual(store.method_calls, [])

    def test_suggestions_are_synced_and_forwarded(self):
        store = self._store()
        queue = MagicMock()
        suggestions = [{"key": "k1", "fix_type": "duplicate-src"}, {"key": "k2"}]

        result = audit.generate_opportunity(
            SITE, self._audit_data(suggestions=suggestions), store, queue
        )

        saved_opportunity = store.save_opportunity.call_args.args[0]
        self.assertEqual(result["opportunity_id"], saved_opportunity.id)
        self.assertEqual(saved_opportunity.audit_type, "redirect-chains")
        saved = store.save_suggestions.call_args.args[1]
        self.assertEqual([s.data["key"] for s in saved], ["k1", "k2"])
        self.assertTrue(all(s.type == "REDIRECT_UPDATE" and s.rank == 0 for s in saved))
        self.assertTrue(all(s.opportunity_id == saved_opportunity.id for s in saved))
        queue.send_message.assert_called_once()

    def test_persistence_errors_propagate(self):
        store = self._store()
        store.save_opportunity.side_effect = RuntimeError("store down")
        with self.assertRaises(OpportunityError):
            audit.generate_opportunity(
                SITE, self._audit_data(suggestions=[{"key": "k1"}]), store
            )


# ===================================================================
#  End to end
# ===================================================================

class RedirectsAuditRunnerTests(SimpleTestCase):
    def _session(self):
        def head(url, allow_redirects=False, **kwargs):
            if url == f"{SITE}/a":
                if allow_redirects:
                    return _resp(200, url=f"{SITE}/c", history=[_resp(301)])
                return _resp(301, location="/c")
            return _resp(200, url=url)

        session = MagicMock()
        session.head.side_effect = head
        session.get.return_value = _resp(
            payload={
                "total": 3,
                "data": [
                    {"Source": "/a", "Destination": "/b"},
                    {"Source": "/a", "Destination": "/c"},
                    {"Source": "/same", "Destination": "/same"},
                ],
            }
        )
        return session

    def test_duplicate_and_same_source_destination(self):
        data = audit.redirects_audit_runner(SITE, self._session())

        audit_result = data["audit_result"]
        self.assertTrue(audit_result["success"])
        self.assertEqual(data["full_audit_ref"], SITE)
        issues = audit_result["details"]["issues"]
        self.assertEqual(
            [(i["original_source"], i["fix_type"]) for i in issues],
            [("/a", "duplicate-src"), ("/same", "same-src-dest")],
        )
        self.assertTrue(all(i["can_apply_fix_automatically"] for i in issues))
        self.assertEqual(audit_result["counts"]["duplicate_source"], 1)
        self.assertEqual(audit_result["counts"]["same_source_destination"], 1)
        self.assertEqual(audit_result["counts"]["total_entries_with_problems"], 2)

    def test_full_pipeline(self):
        store = MagicMock()
        store.find_open_opportunity.return_value = None
        store.get_suggestions.return_value = []

        data = audit.run_redirect_chains_audit(SITE, store, self._session())

        self.assertEqual(len(data["suggestions"]), 2)
        first = data["suggestions"][0]
        self.assertEqual(first["key"], f"{REDIRECTS_URL}~|~/a~|~/b~|~1")
        self.assertEqual(first["source_url_full"], f"{SITE}/a")
        self.assertEqual(first["ordinal_duplicate"], 1)
        self.assertIn("opportunity_id", data)
        self.assertEqual(len(store.save_suggestions.call_args.args[1]), 2)

    def test_invalid_url(self):
        session = MagicMock()

        data = audit.redirects_audit_runner("not a url", session)

        self.assertFalse(data["audit_result"]["success"])
        self.assertEqual(
            data["audit_result"]["reasons"], [{"value": "not a url", "error": "INVALID URL"}]
        )
        session.head.assert_not_called()
        session.get.assert_not_called()

    def test_missing_map_is_a_clean_audit(self):
        session = MagicMock()
        session.head.return_value = _resp(200, url=SITE)
        session.get.return_value = _resp(404)

        data = audit.redirects_audit_runner(SITE, session)

        self.assertTrue(data["audit_result"]["success"])
        self.assertEqual(data["audit_result"]["details"]["issues"], [])


# ===================================================================
#  Background task, form and views
# ===================================================================

class _InlineThread:
    """Runs the worker on start() so tests don't have to wait."""

    def __init__(self, target, **kwargs):
        self.target = target

    def start(self):
        self.target()


class RedirectAuditTaskTests(SimpleTestCase):
    def setUp(self):
        cache.clear()

    @patch.object(audit.threading, "Thread", _InlineThread)
    @patch.object(audit, "run_redirect_chains_audit")
    def test_done(self, mock_run):
        mock_run.return_value = {
            "audit_result": {"success": True, "audit_scope_url": SITE, "counts": {}},
            "suggestions": [{"key": "k1"}],
            "opportunity_id": "opp-1",
        }

        task_id = audit.start_redirect_audit_task(SITE, store=MagicMock())

        task = audit.get_redirect_audit_task(task_id)
        self.assertEqual(task["status"], "done")
        self.assertEqual(task["url"], SITE)
        self.assertEqual(task["result"]["opportunity_id"], "opp-1")

    @patch.object(audit.threading, "Thread", _InlineThread)
    @patch.object(audit, "run_redirect_chains_audit")
    def test_error(self, mock_run):
        mock_run.side_effect = RuntimeError("boom")

        with self.assertLogs("projects.redirect_audit_utils", level="ERROR"):
            task_id = audit.start_redirect_audit_task(SITE, store=MagicMock())

        task = audit.get_redirect_audit_task(task_id)
        self.assertEqual(task["status"], "error")
        self.assertIn("boom", task["error"])

    def test_unknown_task(self):
        self.assertIsNone(audit.get_redirect_audit_task("missing"))


class RedirectAuditFormTests(SimpleTestCase):
    def test_auto_prepend_https(self):
        form = RedirectAuditForm(data={"url": "  example.com/fr "})
        self.assertTrue(form.is_valid())
        self.assertEqual(form.cleaned_data["url"], "https://example.com/fr")

    def test_reject_empty_input(self):
        self.assertFalse(RedirectAuditForm(data={"url": ""}).is_valid())

    def test_reject_no_hostname(self):
        self.assertFalse(RedirectAuditForm(data={"url": "https://"}).is_valid())


class RedirectAuditViewTests(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()

    @patch("projects.views.redirect_audit_utils.start_redirect_audit_task")
    def test_start(self, mock_start):
        mock_start.return_value = "abc"
        request = self.factory.post(
            "/projects/redirect-audit/start/", data={"url": "example.com"}
        )

        response = redirect_audit_start(request)

        self.assertEqual(response.status_code, 200)
        body = json.loads(response.content)
        self.assertEqual(body["task_id"], "abc")
        self.assertEqual(body["status_url"], "/projects/redirect-audit/status/abc/")
        mock_start.assert_called_once_with("https://example.com")

    def test_start_invalid_url(self):
        request = self.factory.post("/projects/redirect-audit/start/", data={"url": ""})
        response = redirect_audit_start(request)
        self.assertEqual(response.status_code, 400)

    def test_start_requires_post(self):
        request = self.factory.get("/projects/redirect-audit/start/")
        self.assertEqual(redirect_audit_start(request).status_code, 405)

    @patch("projects.views.redirect_audit_utils.get_redirect_audit_task")
    def test_status_done(self, mock_get):
        mock_get.return_value = {"status": "done", "url": SITE, "result": {"counts": {}}}
        request = self.factory.get("/projects/redirect-audit/status/abc/")

        response = redirect_audit_status(request, "abc")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.content)["result"], {"counts": {}})

    @patch("projects.views.redirect_audit_utils.get_redirect_audit_task")
    def test_status_unknown(self, mock_get):
        mock_get.return_value = None
        request = self.factory.get("/projects/redirect-audit/status/nope/")
        self.assertEqual(redirect_audit_status(request, "nope").status_code, 404)
