"""test_worker_route.py — Trigger matching and subscription summaries."""

from __future__ import annotations

import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from skipper_shared.worker_contract import parse_worker_manifest
from skipper_shared.worker_route import (
    RouteContext,
    WorkerSubscription,
    collect_github_events,
    collect_subscriptions,
    route_workers,
)


def _worker(worker_id, triggers, enabled=True):
    return {
        "metadata": {"id": worker_id, "type": "t", "enabled": enabled},
        "triggers": triggers,
        "runtime": {"prompt": f"{worker_id} prompt"},
    }


def _manifest(*workers):
    return parse_worker_manifest({"workers": list(workers)})


def _ctx(event="pull_request", **kwargs):
    return RouteContext(provider="github", event=event, **kwargs)


class RouteWorkersTests(unittest.TestCase):
    def test_matches_are_sorted_by_id_and_skip_disabled(self):
        manifest = _manifest(
            _worker("zeta", [{"provider": "github", "event": "issues"}]),
            _worker("alpha", [{"provider": "github", "event": "issues"}]),
            _worker("off", [{"provider": "github", "event": "issues"}], enabled=False),
            _worker("other", [{"provider": "github", "event": "push"}]),
        )
        matched = route_workers(manifest, _ctx("issues", action="opened"))
        self.assertEqual([w.id for w in matched], ["alpha", "zeta"])

    def test_actions_filter(self):
        manifest = _manifest(
            _worker("w", [{"provider": "github", "event": "issues", "actions": ["opened"]}])
        )
        self.assertEqual(len(route_workers(manifest, _ctx("issues", action="opened"))), 1)
        self.assertEqual(route_workers(manifest, _ctx("issues", action="closed")), [])
        self.assertEqual(route_workers(manifest, _ctx("issues")), [])

    def test_empty_actions_list_matches_nothing(self):
        manifest = _manifest(
            _worker("w", [{"provider": "github", "event": "issues", "actions": []}])
        )
        self.assertEqual(route_workers(manifest, _ctx("issues", action="opened")), [])

    def test_branch_and_repository_filters(self):
        trigger = {
            "provider": "github",
            "event": "pull_request",
            "if": {"repository": ["acme/api"], "baseBranches": ["main"]},
        }
        manifest = _manifest(_worker("w", [trigger]))
        hit = _ctx(repository="acme/api", base_branch="main")
        self.assertEqual(len(route_workers(manifest, hit)), 1)
        self.assertEqual(route_workers(manifest, _ctx(repository="acme/web", base_branch="main")), [])
        self.assertEqual(route_workers(manifest, _ctx(repository="acme/api")), [])

    def test_empty_filter_list_matches_anything(self):
        trigger = {"provider": "github", "event": "pull_request", "if": {"headBranches": []}}
        manifest = _manifest(_worker("w", [trigger]))
        self.assertEqual(len(route_workers(manifest, _ctx())), 1)

    def test_draft_only_compared_when_both_present(self):
        trigger = {"provider": "github", "event": "pull_request", "if": {"draft": False}}
        manifest = _manifest(_worker("w", [trigger]))
        self.assertEqual(len(route_workers(manifest, _ctx(draft=False))), 1)
        self.assertEqual(route_workers(manifest, _ctx(draft=True)), [])
        self.assertEqual(len(route_workers(manifest, _ctx(draft=None))), 1)

    def test_any_trigger_matching_is_enough(self):
        manifest = _manifest(
            _worker(
                "w",
                [
                    {"provider": "github", "event": "push"},
                    {"provider": "github", "event": "issue_comment"},
                ],
            )
        )
        self.assertEqual(len(route_workers(manifest, _ctx("issue_comment"))), 1)

    def test_provider_mismatch(self):
        manifest = _manifest(_worker("w", [{"provider": "github", "event": "issues"}]))
        ctx = RouteContext(provider="gitlab", event="issues")
        self.assertEqual(route_workers(manifest, ctx), [])


class SubscriptionTests(unittest.TestCase):
    def test_collect_subscriptions(self):
        manifest = _manifest(
            _worker(
                "review",
                [
                    {"provider": "github", "event": "pull_request"},
                    {"provider": "github", "event": "issue_comment"},
                    {"provider": "github", "event": "pull_request", "actions": ["opened"]},
                ],
            ),
            _worker("off", [{"provider": "github", "event": "push"}], enabled=False),
            _worker("issues", [{"provider": "github", "event": "issues"}]),
        )
        self.assertEqual(
            collect_subscriptions(manifest),
            [
                WorkerSubscription("issues", ("issues",)),
                WorkerSubscription("review", ("issue_comment", "pull_request")),
            ],
        )

    def test_collect_github_events_is_sorted_union(self):
        manifest = _manifest(
            _worker("a", [{"provider": "github", "event": "pull_request"}]),
            _worker("b", [{"provider": "github", "event": "issues"}]),
            _worker("c", [{"provider": "github", "event": "issues"}]),
            _worker("d", [{"provider": "github", "event": "push"}], enabled=False),
        )
        self.assertEqual(collect_github_events(manifest.workers), ["issues", "pull_request"])


if __name__ == "__main__":
    unittest.main()
