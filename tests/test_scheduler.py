import datetime
import os
import threading
import unittest
from unittest import mock

import uri_firewall_sync
from uri_firewall_sync import (
    ApplyFailedError,
    FetchFailedError,
    RuleDefinition,
    UpdateCancelledError,
    UpdateResult,
    build_rule_sources,
    main,
    run_rules,
)

HOUR = datetime.timedelta(hours=1)


def fake_source(prefix, result=None, error=None):
    source = mock.MagicMock()
    source.rule_prefix = prefix
    if error is not None:
        source.update.side_effect = error
    else:
        source.update.return_value = result
    return source


def ok(prefix, blocked=3):
    return UpdateResult(rule_prefix=prefix, candidates=blocked, whitelisted=0, blocked=blocked, duration=0.1)


class RunRulesTest(unittest.TestCase):

    def setUp(self) -> None:
        self.cancel_event = threading.Event()
        self.metrics = mock.MagicMock()

    def test_all_sources_are_updated_in_order(self) -> None:
        sources = [fake_source("A_", ok("A_", 2)), fake_source("B_", None), fake_source("C_", ok("C_", 5))]

        stats = run_rules(sources, self.cancel_event, metrics=self.metrics)

        for source in sources:
            source.update.assert_called_once_with(self.cancel_event)
        self.assertEqual(stats.rules_run, 2)
        self.assertEqual(stats.rules_skipped, 1)
        self.assertEqual(stats.ranges_blocked, 7)
        self.assertEqual(self.metrics.record_success.call_count, 2)
        self.metrics.mark_pass.assert_called_once_with()

    def test_failures_do_not_stop_the_pass(self) -> None:
        sources = [
            fake_source("A_", error=FetchFailedError("http://a", "404")),
            fake_source("B_", error=ApplyFailedError("http://b", "rejected")),
            fake_source("C_", error=KeyError("boom")),
            fake_source("D_", ok("D_")),
        ]

        stats = run_rules(sources, self.cancel_event, metrics=self.metrics)

        self.assertEqual(stats.rules_failed, 3)
        self.assertEqual(stats.rules_run, 1)
        self.assertEqual(self.metrics.record_failure.call_args_list, [
            mock.call("A_", "fetch"),
            mock.call("B_", "apply"),
            mock.call("C_", "unexpected"),
        ])

    def test_cancellation_ends_the_pass(self) -> None:
        sources = [
            fake_source("A_", error=UpdateCancelledError("http://a", "cancelled")),
            fake_source("B_", ok("B_")),
        ]

        stats = run_rules(sources, self.cancel_event, metrics=self.metrics)

        self.assertTrue(stats.cancelled)
        sources[1].update.assert_not_called()
        self.metrics.record_failure.assert_called_once_with("A_", "cancelled")

    def test_already_cancelled(self) -> None:
        self.cancel_event.set()
        source = fake_source("A_", ok("A_"))

        stats = run_rules([source], self.cancel_event)

        self.assertTrue(stats.cancelled)
        source.update.assert_not_called()


class BuildRuleSourcesTest(unittest.TestCase):

    def test_duplicates_are_dropped(self) -> None:
        definitions = [
            RuleDefinition("A_", HOUR, "/tmp/a.txt"),
            RuleDefinition("B_", HOUR, "/tmp/a.txt"),
            RuleDefinition("A_", HOUR, "/tmp/a.txt"),
        ]
        firewall = mock.MagicMock()

        sources = build_rule_sources(definitions, firewall, None)

        self.assertEqual([s.rule_prefix for s in sources], ["A_", "B_"])
        self.assertTrue(all(s.firewall is firewall for s in sources))
        self.assertTrue(all(s.whitelist_checker is None for s in sources))


class MainTest(unittest.TestCase):

    def setUp(self) -> None:
        patcher = mock.patch.object(uri_firewall_sync, "load_dotenv")
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_list_rules(self) -> None:
        env = {"FIREWALL_RULES": "AbuseFeed_,3600,/tmp/abuse.txt"}
        with mock.patch.dict(os.environ, env, clear=True):
            self.assertEqual(main(["--list-rules"]), 0)

    def test_invalid_config(self) -> None:
        with mock.patch.dict(os.environ, {"FIREWALL_RULES": "broken"}, clear=True):
            self.assertEqual(main(["--validate"]), 1)

    def test_no_rules(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(main([]), 1)

    def test_dry_run_single_pass(self) -> None:
        env = {
            "FIREWALL_RULES": "AbuseFeed_,3600,/tmp/abuse.txt",
            "ALLOWLIST_PRIVATE": "false",
        }
        with mock.patch.dict(os.environ, env, clear=True), \
                mock.patch.object(uri_firewall_sync, "run_rules") as run:
            run.return_value = uri_firewall_sync.PassStats(rules_run=1, ranges_blocked=4)
            self.assertEqual(main(["--dry-run", "--no-metrics"]), 0)

        sources = run.call_args[0][0]
        self.assertEqual(len(sources), 1)
        self.assertTrue(sources[0].firewall.dry_run)
        self.assertIsNone(sources[0].whitelist_checker)

    def test_delete_rules(self) -> None:
        env = {"FIREWALL_RULES": "AbuseFeed_,3600,/tmp/abuse.txt"}
        with mock.patch.dict(os.environ, env, clear=True), \
                mock.patch.object(uri_firewall_sync.RuleSource, "delete_rules") as delete_rules:
            self.assertEqual(main(["--dry-run", "--delete-rules"]), 0)
        delete_rules.assert_called_once_with()
