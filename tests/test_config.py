import datetime
import logging
import os
import tempfile
import unittest
from unittest import mock

import uri_firewall_sync
from uri_firewall_sync import (
    Config,
    EnvValidationError,
    RuleDefinition,
    parse_interval,
    parse_rule_definitions,
    read_secret_file,
)


class ParseIntervalTest(unittest.TestCase):

    def test_seconds(self) -> None:
        self.assertEqual(parse_interval("900"), datetime.timedelta(minutes=15))

    def test_clock_format(self) -> None:
        self.assertEqual(parse_interval("01:30:00"), datetime.timedelta(hours=1, minutes=30))
        self.assertEqual(parse_interval("1:00:00:00"), datetime.timedelta(days=1))

    def test_invalid(self) -> None:
        for value in ["", "abc", "1:30", "00:00:00", "0", "-5", "1:2:3:4:5"]:
            with self.assertRaises(ValueError, msg=value):
                parse_interval(value)


class ParseRuleDefinitionsTest(unittest.TestCase):

    def test_entries(self) -> None:
        text = (
            "AbuseFeed_,01:00:00,https://example.org/abuse.txt;"
            "LocalFeed_, 600 , /etc/blocklists/local.txt\n"
            "\n"
        )
        self.assertEqual(parse_rule_definitions(text), [
            RuleDefinition("AbuseFeed_", datetime.timedelta(hours=1), "https://example.org/abuse.txt"),
            RuleDefinition("LocalFeed_", datetime.timedelta(minutes=10), "/etc/blocklists/local.txt"),
        ])

    def test_uri_may_contain_commas(self) -> None:
        rules = parse_rule_definitions("Q_,60,https://example.org/list?fields=ip,cidr")
        self.assertEqual(rules[0].uri, "https://example.org/list?fields=ip,cidr")

    def test_empty(self) -> None:
        self.assertEqual(parse_rule_definitions(""), [])

    def test_errors_are_collected(self) -> None:
        text = "MissingParts,60;Bad_,soon,/tmp/x;Ftp_,60,ftp://example.org/x"
        with self.assertRaises(EnvValidationError) as ctx:
            parse_rule_definitions(text)
        self.assertEqual(len(ctx.exception.errors), 3)


class ConfigDefaultsTest(unittest.TestCase):

    def test_list_fields_are_not_shared(self) -> None:
        first, second = Config(), Config()
        self.assertEqual(first.rules, [])
        self.assertEqual(first.allow_list, [])
        first.allow_list.append("10.0.0.1")
        self.assertEqual(second.allow_list, [])

    def test_list_rules_on_default_config(self) -> None:
        with self.assertLogs("uri-firewall-sync", level="INFO") as logs:
            uri_firewall_sync.list_rules(Config(), logging.getLogger("uri-firewall-sync"))
        self.assertIn("Configured rules: 0", logs.output[0])


class ConfigFromEnvTest(unittest.TestCase):

    def setUp(self) -> None:
        patcher = mock.patch.object(uri_firewall_sync, "load_dotenv")
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()
        self.assertEqual(config.rules, [])
        self.assertEqual(config.fetch_timeout, 60)
        self.assertEqual(config.lapi_url, "http://localhost:8080")
        self.assertTrue(config.allowlist_private)
        self.assertFalse(config.allowlist_github)
        self.assertFalse(config.dry_run)
        self.assertEqual(config.tick_interval, 0)

    def test_values(self) -> None:
        env = {
            "FIREWALL_RULES": "AbuseFeed_,3600,https://example.org/abuse.txt",
            "FETCH_TIMEOUT": "15",
            "CROWDSEC_LAPI_URL": "http://lapi:8080/",
            "ALLOWLIST": "1.2.3.4, 10.0.0.0/8,",
            "ALLOWLIST_PRIVATE": "no",
            "DRY_RUN": "TRUE",
            "LOG_LEVEL": "debug",
            "TICK_INTERVAL": "30",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = Config.from_env()
        self.assertEqual(len(config.rules), 1)
        self.assertEqual(config.rules[0].rule_prefix, "AbuseFeed_")
        self.assertEqual(config.fetch_timeout, 15)
        self.assertEqual(config.lapi_url, "http://lapi:8080")
        self.assertEqual(config.allow_list, ["1.2.3.4", "10.0.0.0/8"])
        self.assertFalse(config.allowlist_private)
        self.assertTrue(config.dry_run)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.tick_interval, 30)

    def test_invalid_values(self) -> None:
        env = {
            "DRY_RUN": "maybe",
            "FETCH_TIMEOUT": "soon",
            "FIREWALL_RULES": "Broken_,never,/tmp/x",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            with self.assertRaises(EnvValidationError) as ctx:
                Config.from_env()
        self.assertEqual(len(ctx.exception.errors), 3)


class ReadSecretFileTest(unittest.TestCase):

    def read(self, content: str) -> str:
        with tempfile.NamedTemporaryFile("w", suffix=".secret", delete=False) as f:
            f.write(content)
        self.addCleanup(os.remove, f.name)
        return read_secret_file(f.name)

    def test_single_line(self) -> None:
        self.assertEqual(self.read("s3cret\n"), "s3cret")

    def test_crowdsec_credentials(self) -> None:
        self.assertEqual(self.read("url: http://lapi\nlogin: m\npassword: s3cret\n"), "s3cret")
