#!/usr/bin/env python3
"""
URI Firewall Sync

Keeps firewall rule groups in sync with IP blocklists published as plain
text, either on disk or behind an HTTP(S) URL.

Each configured rule (prefix, interval, uri) is re-fetched at most once per
interval. The text is parsed line by line into IP addresses and CIDR ranges,
whitelisted ranges are dropped, and the rule group named by the prefix is
replaced in a single bulk call to the firewall.

Features:
- Local file and HTTP(S) sources
- Comment dialects: '#', "'" and 'REM'
- 10,000 line cap per fetch
- CIDR-aware allowlist (user entries, private ranges, GitHub meta ranges)
- CrowdSec LAPI firewall backend with group replace semantics
- Cancellation on SIGINT/SIGTERM for in-flight fetches and applies
- Per-rule Prometheus metrics via Pushgateway

License: MIT
"""

from __future__ import annotations

import argparse
import io
import ipaddress
import itertools
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol, Set, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests
from dotenv import load_dotenv
from prometheus_client import CollectorRegistry, Gauge, delete_from_gateway, push_to_gateway
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

LOGGER_NAME = "uri-firewall-sync"
USER_AGENT = f"uri-firewall-sync/{__version__}"

# Hard cap on lines considered per fetch
MAX_LINES = 10_000

# Line prefixes ignored by the parser, one per feed dialect
COMMENT_PREFIXES = ("#", "'", "REM")

READ_CHUNK_SIZE = 64 * 1024

# Seconds between cancel checks while a download blocks
CANCEL_POLL_INTERVAL = 0.1

AddressRange = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def utc_now() -> datetime:
    """Current time in UTC. Replaced in tests to drive the rate gate."""
    return datetime.now(timezone.utc)


# =============================================================================
# Errors
# =============================================================================

class RuleUpdateError(Exception):
    """Base class for errors that abort an update cycle."""

    def __init__(self, uri: str, message: str):
        self.uri = uri
        super().__init__(message)


class FetchFailedError(RuleUpdateError):
    """The source could not be read, or answered with a non-success status."""
    pass


class UpdateCancelledError(RuleUpdateError):
    """Cancellation was observed while fetching or applying."""
    pass


class ApplyFailedError(RuleUpdateError):
    """The firewall rejected or failed the bulk submission."""
    pass


class EnvValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


def _raise_if_cancelled(cancel_event: Optional[threading.Event], uri: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise UpdateCancelledError(uri, f"update of {uri} cancelled")


# =============================================================================
# Collaborators
# =============================================================================

class Firewall(Protocol):
    """Firewall sink that owns rule groups keyed by a name prefix."""

    def block_ranges(
        self,
        rule_prefix: str,
        ranges: list[AddressRange],
        metadata: Optional[dict],
        cancel_event: Optional[threading.Event],
    ) -> bool:
        """Replace the contents of group ``rule_prefix`` with ``ranges``."""
        ...

    def get_rule_names(self, rule_prefix: str) -> Iterable[str]: ...

    def delete_rule(self, name: str) -> bool: ...


class WhitelistChecker(Protocol):
    def is_whitelisted(self, address_range: AddressRange) -> bool: ...


# =============================================================================
# Range Parsing
# =============================================================================

def parse_range(value: str) -> Optional[AddressRange]:
    """
    Parse a single IP address or CIDR range.

    Addresses become host networks (/32 or /128). Host bits in a CIDR are
    masked off, so "10.1.2.3/8" reads as 10.0.0.0/8.

    Returns None if the value is neither.
    """
    try:
        return ipaddress.ip_network(value, strict=False)
    except (ValueError, TypeError):
        return None


def is_comment(line: str) -> bool:
    return line.startswith(COMMENT_PREFIXES)


def parse_ranges(text: str, max_lines: int = MAX_LINES) -> list[AddressRange]:
    """
    Extract ranges from feed text.

    At most ``max_lines`` lines are read; the rest is ignored. Blank lines,
    comment lines and anything that does not parse as an address or CIDR
    are skipped. Ranges are returned in the order they appear, duplicates
    included. Never raises.
    """
    ranges: list[AddressRange] = []

    # newline=None splits on \n, \r\n and \r
    for raw_line in itertools.islice(io.StringIO(text, newline=None), max_lines):
        line = raw_line.strip()
        if not line or is_comment(line):
            continue

        address_range = parse_range(line)
        if address_range is not None:
            ranges.append(address_range)

    return ranges


def filter_whitelisted(
    candidates: list[AddressRange],
    whitelist_checker: Optional[WhitelistChecker],
) -> list[AddressRange]:
    """Drop whitelisted ranges, keeping the order of the rest."""
    if whitelist_checker is None:
        return candidates
    return [r for r in candidates if not whitelist_checker.is_whitelisted(r)]


def decode_text(raw: bytes) -> str:
    """Decode feed bytes as UTF-8 (BOM tolerated), falling back to latin-1."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


# =============================================================================
# HTTP Client
# =============================================================================

def create_http_session(max_retries: int = 3) -> requests.Session:
    """Create an HTTP session, with retry logic when max_retries > 0."""
    session = requests.Session()

    if max_retries > 0:
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,  # 1s, 2s, 4s...
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "POST", "DELETE"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
    else:
        adapter = HTTPAdapter(max_retries=0)

    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


# =============================================================================
# Rule Source
# =============================================================================

@dataclass
class UpdateResult:
    """Outcome of one completed update cycle."""
    rule_prefix: str
    candidates: int
    whitelisted: int
    blocked: int
    duration: float


class RuleSource:
    """
    Blocks the IP ranges published at a URI under one firewall rule group.

    The uri is either a local file (``file://`` URI or plain path) or an
    HTTP(S) base address. Network sources own a requests session for their
    whole lifetime; call close() (or use the instance as a context manager)
    to release it.

    Not thread-safe. update() must be driven by a single scheduler; two
    concurrent calls on one instance race on ``last_run``.

    Equality uses prefix, uri and interval. The hash uses the uri only, so
    sources that share a uri land in the same bucket and equality tells
    them apart.
    """

    def __init__(
        self,
        firewall: Firewall,
        whitelist_checker: Optional[WhitelistChecker],
        rule_prefix: str,
        interval: timedelta,
        uri: str,
        timeout: int = 60,
        logger: Optional[logging.Logger] = None,
    ):
        self.firewall = firewall
        self.whitelist_checker = whitelist_checker
        self.rule_prefix = rule_prefix
        self.interval = interval
        self.uri = uri
        self.timeout = timeout
        self.last_run: Optional[datetime] = None
        self.logger = logger or logging.getLogger(LOGGER_NAME)

        self._path: Optional[str] = None
        self._base_url: Optional[str] = None
        self._session: Optional[requests.Session] = None

        parsed = urlparse(uri)
        scheme = parsed.scheme.lower()
        if scheme in ("http", "https"):
            # Base address must end with a slash so relative retrieval resolves under it
            self._base_url = uri if uri.endswith("/") else uri + "/"
            self._session = create_http_session(max_retries=0)
        elif scheme == "file":
            self._path = url2pathname(parsed.path)
        elif scheme == "" or len(scheme) == 1:
            # Plain path, including Windows drive letters
            self._path = uri
        else:
            raise ValueError(f"Unsupported uri scheme '{parsed.scheme}' in {uri}")

    @property
    def is_file(self) -> bool:
        return self._path is not None

    @property
    def base_url(self) -> Optional[str]:
        return self._base_url

    def close(self) -> None:
        """Release the HTTP session of a network source."""
        if self._session is not None:
            self._session.close()

    def __enter__(self) -> "RuleSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __str__(self) -> str:
        return f"Prefix: {self.rule_prefix}, Interval: {self.interval}, Uri: {self.uri}"

    def __repr__(self) -> str:
        return (
            f"RuleSource(rule_prefix={self.rule_prefix!r}, "
            f"interval={self.interval!r}, uri={self.uri!r})"
        )

    def __hash__(self) -> int:
        return hash(self.uri)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RuleSource):
            return NotImplemented
        return (
            self.rule_prefix == other.rule_prefix
            and self.uri == other.uri
            and self.interval == other.interval
        )

    # ------------------------------------------------------------------
    # Rate gate
    # ------------------------------------------------------------------

    def should_run(self, now: datetime) -> bool:
        """
        Return True and record ``now`` as the last run if the interval has
        elapsed (or the source never ran).

        The timestamp moves before any work is done: a cycle that later
        fails or is cancelled still waits a full interval before the next
        attempt.
        """
        if self.last_run is None or now - self.last_run >= self.interval:
            self.last_run = now
            return True
        return False

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def fetch(self, cancel_event: Optional[threading.Event] = None) -> str:
        """
        Read the raw feed text.

        Raises:
            FetchFailedError: I/O error, transport error or non-2xx status.
            UpdateCancelledError: cancel_event was set before or during the read.
        """
        _raise_if_cancelled(cancel_event, self.uri)
        if self.is_file:
            return self._read_file(cancel_event)
        return self._download(cancel_event)

    def _read_file(self, cancel_event: Optional[threading.Event]) -> str:
        chunks: list[bytes] = []
        try:
            with open(self._path, "rb") as f:
                while True:
                    _raise_if_cancelled(cancel_event, self.uri)
                    chunk = f.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except OSError as e:
            raise FetchFailedError(self.uri, f"Cannot read {self._path}: {e}") from e
        return decode_text(b"".join(chunks))

    def _download(self, cancel_event: Optional[threading.Event]) -> str:
        """
        Download the feed on a worker thread while watching cancel_event.

        A cancel raises UpdateCancelledError right away, even while the
        worker is blocked waiting on headers or a chunk. The abandoned
        worker closes what it has opened and ends at its socket timeout.
        """
        if cancel_event is None:
            return self._read_response(None)

        outcome: dict = {}
        opened: dict = {}

        def worker() -> None:
            try:
                outcome["text"] = self._read_response(cancel_event, opened)
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=worker, name=f"fetch-{self.rule_prefix}", daemon=True)
        thread.start()
        while True:
            thread.join(CANCEL_POLL_INTERVAL)
            if not thread.is_alive():
                break
            if cancel_event.is_set():
                response = opened.get("response")
                if response is not None:
                    response.close()
                raise UpdateCancelledError(self.uri, f"fetch of {self.uri} cancelled")

        if "error" in outcome:
            raise outcome["error"]
        return outcome["text"]

    def _read_response(self, cancel_event: Optional[threading.Event], opened: Optional[dict] = None) -> str:
        chunks: list[bytes] = []
        try:
            response = self._session.get(
                self._base_url,
                timeout=self.timeout,
                stream=True,
                headers={"User-Agent": USER_AGENT},
            )
            if opened is not None:
                opened["response"] = response
            with response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
                    _raise_if_cancelled(cancel_event, self.uri)
                    chunks.append(chunk)
        except requests.RequestException as e:
            if cancel_event is not None and cancel_event.is_set():
                raise UpdateCancelledError(self.uri, f"fetch of {self.uri} cancelled") from e
            raise FetchFailedError(self.uri, f"Cannot fetch {self._base_url}: {e}") from e
        return decode_text(b"".join(chunks))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def update(self, cancel_event: Optional[threading.Event] = None) -> Optional[UpdateResult]:
        """
        Run one fetch -> parse -> filter -> apply cycle if the interval has
        elapsed.

        Returns None when the rate gate skipped the cycle, otherwise the
        cycle's UpdateResult.

        Raises:
            FetchFailedError, UpdateCancelledError, ApplyFailedError
        """
        if not self.should_run(utc_now()):
            return None

        t0 = time.time()
        text = self.fetch(cancel_event)
        candidates = parse_ranges(text)
        ranges = filter_whitelisted(candidates, self.whitelist_checker)
        self.logger.debug(
            f"{self.rule_prefix}: {len(text)} chars from {self.uri}, "
            f"{len(candidates)} ranges parsed, {len(candidates) - len(ranges)} whitelisted"
        )

        self._apply(ranges, cancel_event)

        result = UpdateResult(
            rule_prefix=self.rule_prefix,
            candidates=len(candidates),
            whitelisted=len(candidates) - len(ranges),
            blocked=len(ranges),
            duration=time.time() - t0,
        )
        self.logger.info(
            f"{self.rule_prefix}: blocked {result.blocked} ranges from {self.uri} "
            f"in {result.duration:.1f}s"
        )
        return result

    def _apply(self, ranges: list[AddressRange], cancel_event: Optional[threading.Event]) -> None:
        _raise_if_cancelled(cancel_event, self.uri)
        try:
            accepted = self.firewall.block_ranges(self.rule_prefix, ranges, None, cancel_event)
        except RuleUpdateError:
            raise
        except Exception as e:
            raise ApplyFailedError(self.uri, f"Firewall failed to block {self.rule_prefix}: {e}") from e

        if not accepted:
            raise ApplyFailedError(self.uri, f"Firewall rejected {len(ranges)} ranges for {self.rule_prefix}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def delete_rules(self) -> None:
        """Delete every firewall rule created under this source's prefix."""
        delete_group(self.firewall, self.rule_prefix)


def delete_group(firewall: Firewall, rule_prefix: str) -> None:
    """
    Delete every rule the firewall lists under ``rule_prefix``.

    Deletions are independent; failures are left to the firewall and
    nothing is rolled back.
    """
    for rule_name in list(firewall.get_rule_names(rule_prefix)):
        firewall.delete_rule(rule_name)


# =============================================================================
# Allowlist with CIDR Support
# =============================================================================

# Private/reserved ranges that should never be blocked
PRIVATE_NETWORKS: list[AddressRange] = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("255.255.255.255/32"),
    ipaddress.ip_network("100.64.0.0/10"),  # Carrier-grade NAT
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("224.0.0.0/4"),  # Multicast
    ipaddress.ip_network("240.0.0.0/4"),  # Reserved
    ipaddress.ip_network("::1/128"),  # Loopback
    ipaddress.ip_network("fc00::/7"),  # Unique local
    ipaddress.ip_network("fe80::/10"),  # Link-local
    ipaddress.ip_network("ff00::/8"),  # Multicast
]

# Public DNS resolvers
EXCLUDED_IPS: list[str] = [
    "1.0.0.1", "1.1.1.1",  # Cloudflare
    "8.8.8.8", "8.8.4.4",  # Google
    "9.9.9.9",  # Quad9
    "208.67.222.222", "208.67.220.220",  # OpenDNS
]

GITHUB_META_URL = "https://api.github.com/meta"
GITHUB_META_SECTIONS = ["git", "web", "api", "hooks", "actions"]

# Used when the meta API is unreachable
GITHUB_FALLBACK_RANGES = [
    "140.82.112.0/20",
    "185.199.108.0/22",
    "192.30.252.0/22",
    "143.55.64.0/20",
]


class Allowlist:
    """
    CIDR-aware whitelist evaluator.

    A range is whitelisted when it overlaps any allowlisted network of the
    same IP version, so blocking 1.1.1.0/24 is refused when 1.1.1.1 is
    allowlisted. Exact host matches take a set lookup before the linear
    scan over networks.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._hosts: Set[AddressRange] = set()
        self._networks_v4: list[ipaddress.IPv4Network] = []
        self._networks_v6: list[ipaddress.IPv6Network] = []
        self._logger = logger or logging.getLogger(LOGGER_NAME)

    @property
    def ipv4_count(self) -> int:
        return len(self._networks_v4)

    @property
    def ipv6_count(self) -> int:
        return len(self._networks_v6)

    @property
    def entry_count(self) -> int:
        return self.ipv4_count + self.ipv6_count

    def add_network(self, network: AddressRange) -> None:
        if network.num_addresses == 1:
            self._hosts.add(network)
        if network.version == 4:
            self._networks_v4.append(network)
        else:
            self._networks_v6.append(network)

    def add_networks(self, networks: Iterable[AddressRange]) -> None:
        for network in networks:
            self.add_network(network)

    def add_entry(self, entry: str) -> None:
        """
        Add an IP or CIDR range given as text.

        Invalid entries are logged and ignored.
        """
        entry = entry.strip()
        if not entry:
            return

        try:
            network = ipaddress.ip_network(entry, strict=False)
        except (ValueError, TypeError) as e:
            self._logger.warning(f"Invalid allowlist entry '{entry}': {e}")
            return
        self.add_network(network)

    def add_entries(self, entries: Iterable[str]) -> None:
        for entry in entries:
            self.add_entry(entry)

    def is_whitelisted(self, address_range: AddressRange) -> bool:
        if address_range in self._hosts:
            return True

        networks = self._networks_v4 if address_range.version == 4 else self._networks_v6
        for allowed in networks:
            if address_range.overlaps(allowed):
                return True
        return False

    def fetch_github_ranges(self, session: Optional[requests.Session] = None, timeout: int = 10) -> int:
        """
        Add GitHub's published ranges from the meta API.

        Falls back to GITHUB_FALLBACK_RANGES if the API is unreachable.

        Returns:
            Number of ranges added.
        """
        if session is None:
            session = requests.Session()

        ranges_added = 0
        try:
            self._logger.info("Fetching GitHub IP ranges from meta API...")
            response = session.get(
                GITHUB_META_URL,
                timeout=timeout,
                headers={"User-Agent": USER_AGENT},
            )
            response.raise_for_status()
            data = response.json()

            seen = set()
            for section in GITHUB_META_SECTIONS:
                for cidr in data.get(section, []):
                    if cidr not in seen:
                        seen.add(cidr)
                        self.add_entry(cidr)
                        ranges_added += 1

            self._logger.info(f"Added {ranges_added} GitHub IP ranges to allowlist")

        except (requests.RequestException, ValueError) as e:
            self._logger.warning(f"Could not fetch GitHub meta API ({e}), using fallback ranges")
            self.add_entries(GITHUB_FALLBACK_RANGES)
            ranges_added = len(GITHUB_FALLBACK_RANGES)
            self._logger.info(f"Added {ranges_added} fallback GitHub IP ranges to allowlist")

        return ranges_added


def build_allowlist(config: "Config", session: Optional[requests.Session] = None,
                    logger: Optional[logging.Logger] = None) -> Optional[Allowlist]:
    """
    Build the whitelist from configuration.

    Returns None when nothing ends up allowlisted, which leaves rule
    sources without a whitelist checker.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    allowlist = Allowlist(logger=logger)

    if config.allow_list:
        allowlist.add_entries(config.allow_list)
        logger.info(f"Allowlist: {allowlist.entry_count} user-defined entries loaded")

    if config.allowlist_private:
        allowlist.add_networks(PRIVATE_NETWORKS)
        allowlist.add_entries(EXCLUDED_IPS)

    if config.allowlist_github:
        allowlist.fetch_github_ranges(session=session)

    if allowlist.entry_count == 0:
        return None

    logger.info(
        f"Allowlist total: {allowlist.ipv4_count} IPv4 entries, "
        f"{allowlist.ipv6_count} IPv6 entries"
    )
    return allowlist


# =============================================================================
# CrowdSec LAPI Firewall
# =============================================================================

class CrowdSecFirewall:
    """
    Firewall backed by CrowdSec decisions.

    A rule group is the set of decisions whose scenario is
    "<scenario>/<rule_prefix>". Rule names are "<rule_prefix>#<decision id>".

    Reads use the bouncer API key (X-Api-Key). Writes go through the
    /alerts and /decisions endpoints and need machine credentials (JWT).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        machine_id: str,
        machine_password: str,
        session: requests.Session,
        duration: str = "24h",
        decision_type: str = "ban",
        origin: str = "uri-firewall-sync",
        scenario: str = "external/uri-rule",
        reason: str = "external_blocklist",
        batch_size: int = 1000,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.machine_id = machine_id
        self.machine_password = machine_password
        self.session = session
        self.duration = duration
        self.decision_type = decision_type
        self.origin = origin
        self.scenario = scenario
        self.reason = reason
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.jwt_token: Optional[str] = None
        self.jwt_expires: Optional[float] = None

        self.bouncer_headers = {
            "X-Api-Key": api_key,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def scenario_for(self, rule_prefix: str) -> str:
        return f"{self.scenario}/{rule_prefix}"

    def _get_machine_token(self) -> Optional[str]:
        """Get JWT token for machine authentication."""
        if self.jwt_token and self.jwt_expires and time.time() < self.jwt_expires - 60:
            return self.jwt_token

        if not self.machine_id or not self.machine_password:
            return None

        try:
            response = self.session.post(
                f"{self.base_url}/v1/watchers/login",
                json={
                    "machine_id": self.machine_id,
                    "password": self.machine_password,
                    "scenarios": [self.scenario],
                },
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=10,
            )
        except requests.RequestException as e:
            self.logger.error(f"Machine login request failed: {e}")
            return None

        if response.status_code != 200:
            self.logger.warning(
                f"Machine login failed: {response.status_code} {response.text[:200]}"
            )
            return None

        data = response.json()
        self.jwt_token = data.get("token")
        self.jwt_expires = time.time() + 3600
        expire_str = data.get("expire", "")
        if expire_str:
            try:
                self.jwt_expires = datetime.fromisoformat(expire_str.replace("Z", "+00:00")).timestamp()
            except ValueError:
                pass
        self.logger.debug("Obtained machine JWT token")
        return self.jwt_token

    def _get_machine_headers(self) -> Optional[dict]:
        token = self._get_machine_token()
        if not token:
            return None
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def health_check(self) -> bool:
        """Check if LAPI is accessible."""
        try:
            response = self.session.get(
                f"{self.base_url}/v1/decisions",
                headers=self.bouncer_headers,
                timeout=10,
                params={"limit": 1},
            )
            # 200 = OK, 403 = unauthorized but reachable
            return response.status_code in (200, 403)
        except requests.RequestException as e:
            self.logger.error(f"LAPI health check failed: {e}")
            return False

    def can_write(self) -> bool:
        return bool(self.machine_id and self.machine_password)

    # ------------------------------------------------------------------
    # Rule groups
    # ------------------------------------------------------------------

    def _list_decision_ids(self, rule_prefix: str) -> Optional[list[int]]:
        """Decision ids of a group, or None if the LAPI could not be read."""
        scenario = self.scenario_for(rule_prefix)
        try:
            response = self.session.get(
                f"{self.base_url}/v1/decisions",
                headers=self.bouncer_headers,
                params={"scenarios_containing": rule_prefix},
                timeout=60,
            )
        except requests.RequestException as e:
            self.logger.warning(f"Failed to list decisions for {scenario}: {e}")
            return None

        if response.status_code != 200:
            self.logger.error(f"LAPI returned {response.status_code} listing decisions for {scenario}")
            return None

        try:
            decisions = response.json() or []
        except ValueError as e:
            self.logger.warning(f"Failed to parse decisions for {scenario}: {e}")
            return None

        return [d["id"] for d in decisions if d.get("scenario") == scenario and "id" in d]

    def get_rule_names(self, rule_prefix: str) -> list[str]:
        ids = self._list_decision_ids(rule_prefix)
        if not ids:
            return []
        return [f"{rule_prefix}#{decision_id}" for decision_id in ids]

    def delete_rule(self, name: str) -> bool:
        decision_id = name.rpartition("#")[2]
        if not decision_id.isdigit():
            self.logger.warning(f"Not a CrowdSec rule name: {name}")
            return False
        return self._delete_decision(int(decision_id))

    def _delete_decision(self, decision_id: int) -> bool:
        if self.dry_run:
            self.logger.debug(f"DRY RUN: Would delete decision {decision_id}")
            return True

        headers = self._get_machine_headers()
        if not headers:
            self.logger.error("Machine credentials required for deleting decisions")
            return False

        try:
            response = self.session.delete(
                f"{self.base_url}/v1/decisions/{decision_id}",
                headers=headers,
                timeout=60,
            )
        except requests.RequestException as e:
            self.logger.warning(f"Failed to delete decision {decision_id}: {e}")
            return False

        if response.status_code not in (200, 204):
            self.logger.warning(f"LAPI returned {response.status_code} deleting decision {decision_id}")
            return False
        return True

    def block_ranges(
        self,
        rule_prefix: str,
        ranges: list[AddressRange],
        metadata: Optional[dict] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """
        Replace the decisions of group ``rule_prefix`` with ``ranges``.

        New decisions are posted before the previous ones are deleted so the
        group is never empty in between. Returns False if the group could
        not be listed, a batch was rejected or a stale decision survived.
        """
        scenario = self.scenario_for(rule_prefix)
        if self.dry_run:
            self.logger.info(f"DRY RUN: Would replace {scenario} with {len(ranges)} ranges")
            return True

        stale_ids = self._list_decision_ids(rule_prefix)
        if stale_ids is None:
            return False

        for start in range(0, len(ranges), self.batch_size):
            _raise_if_cancelled(cancel_event, self.base_url)
            batch = ranges[start:start + self.batch_size]
            if not self._post_alert(scenario, batch, metadata):
                return False

        failed_ids = []
        for decision_id in stale_ids:
            _raise_if_cancelled(cancel_event, self.base_url)
            if not self._delete_decision(decision_id):
                failed_ids.append(decision_id)

        if failed_ids:
            self.logger.error(
                f"{scenario}: {len(failed_ids)} stale decisions could not be removed: {failed_ids}"
            )
            return False

        self.logger.debug(f"{scenario}: {len(ranges)} decisions added, {len(stale_ids)} removed")
        return True

    def _post_alert(self, scenario: str, ranges: list[AddressRange], metadata: Optional[dict]) -> bool:
        """Post one alert carrying a decision per range."""
        decisions = []
        for network in ranges:
            if network.num_addresses == 1:
                scope, value = "Ip", str(network.network_address)
            else:
                scope, value = "Range", str(network)
            decisions.append({
                "duration": self.duration,
                "origin": self.origin,
                "scenario": scenario,
                "scope": scope,
                "type": self.decision_type,
                "value": value,
            })

        reason = (metadata or {}).get("reason", self.reason)
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
        alert = {
            "capacity": 0,
            "decisions": decisions,
            "events": [],
            "events_count": 1,
            "labels": None,
            "leakspeed": "0",
            "message": reason,
            "scenario": scenario,
            "scenario_hash": "",
            "scenario_version": "",
            "simulated": False,
            "source": {
                "scope": "Ip",
                "value": "0.0.0.0",
            },
            "start_at": now,
            "stop_at": now,
        }

        headers = self._get_machine_headers()
        if not headers:
            self.logger.error(
                "Machine credentials required for writing decisions. "
                "Set CROWDSEC_MACHINE_ID and CROWDSEC_MACHINE_PASSWORD or CROWDSEC_MACHINE_PASSWORD_FILE"
            )
            return False

        try:
            response = self.session.post(
                f"{self.base_url}/v1/alerts",
                headers=headers,
                json=[alert],
                timeout=60,
            )
        except requests.RequestException as e:
            self.logger.error(f"Failed to add decisions for {scenario}: {e}")
            return False

        if response.status_code not in (200, 201):
            self.logger.warning(f"LAPI returned {response.status_code}: {response.text[:200]}")
            return False
        return True


# =============================================================================
# Configuration
# =============================================================================

# Valid boolean string values (case-insensitive)
VALID_BOOL_VALUES: set[str] = {"true", "false", "1", "0", "yes", "no", "on", "off"}

BOOL_ENV_VARS: set[str] = {
    "ALLOWLIST_GITHUB",
    "ALLOWLIST_PRIVATE",
    "DRY_RUN",
    "LOG_TIMESTAMPS",
    "METRICS_ENABLED",
}


@dataclass
class RuleDefinition:
    """One configured rule, before collaborators are attached."""
    rule_prefix: str
    interval: timedelta
    uri: str


def parse_interval(value: str) -> timedelta:
    """
    Parse an interval given as seconds ("900") or as [D:]HH:MM:SS
    ("00:15:00", "1:00:00:00").

    Raises:
        ValueError: malformed or not positive.
    """
    value = value.strip()
    if value.isdigit():
        interval = timedelta(seconds=int(value))
    else:
        parts = value.split(":")
        if len(parts) not in (3, 4) or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid interval '{value}', expected seconds or [D:]HH:MM:SS")
        numbers = [int(p) for p in parts]
        if len(numbers) == 3:
            numbers.insert(0, 0)
        days, hours, minutes, seconds = numbers
        interval = timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)

    if interval <= timedelta(0):
        raise ValueError(f"Interval must be positive, got '{value}'")
    return interval


def parse_rule_definitions(text: str) -> list[RuleDefinition]:
    """
    Parse rule definitions of the form "prefix,interval,uri", separated by
    ';' or newlines. Blank entries are skipped.

    Raises:
        EnvValidationError: with one message per invalid entry.
    """
    rules: list[RuleDefinition] = []
    errors: list[str] = []

    entries = [e.strip() for e in text.replace("\n", ";").split(";")]
    for entry in entries:
        if not entry:
            continue

        parts = [p.strip() for p in entry.split(",", 2)]
        if len(parts) != 3 or not all(parts):
            errors.append(f"Invalid rule '{entry}': expected prefix,interval,uri")
            continue

        prefix, interval_text, uri = parts
        try:
            interval = parse_interval(interval_text)
        except ValueError as e:
            errors.append(f"Invalid rule '{entry}': {e}")
            continue

        scheme = urlparse(uri).scheme.lower()
        if scheme not in ("", "file", "http", "https") and len(scheme) != 1:
            errors.append(f"Invalid rule '{entry}': unsupported scheme '{scheme}'")
            continue

        rules.append(RuleDefinition(rule_prefix=prefix, interval=interval, uri=uri))

    if errors:
        raise EnvValidationError(errors)
    return rules


def validate_bool_env_vars() -> list[str]:
    """Return one error per boolean environment variable with an invalid value."""
    errors = []
    for var_name in sorted(BOOL_ENV_VARS):
        value = os.environ.get(var_name)
        if value is not None and value.lower() not in VALID_BOOL_VALUES:
            errors.append(
                f"Invalid value for {var_name}: '{value}'\n"
                f"  Expected one of: true, false, 1, 0, yes, no, on, off (case-insensitive)"
            )
    return errors


def read_secret_file(file_path: str) -> str:
    """Read a secret from a file.

    Supports a single-line secret (Docker secrets style) or a CrowdSec
    credentials YAML with a 'password: <value>' line.
    """
    with open(file_path, "r") as f:
        lines = f.readlines()
    if len(lines) == 1:
        return lines[0].strip()
    for line in lines:
        if line.strip().startswith("password:"):
            return line.replace("password:", "", 1).strip()
    return "".join(lines).strip()


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    rules: list[RuleDefinition] = field(default_factory=list)
    fetch_timeout: int = 60
    max_retries: int = 3

    # CrowdSec LAPI settings
    lapi_url: str = "http://localhost:8080"
    lapi_key: str = ""
    lapi_key_file: str = ""
    machine_id: str = ""
    machine_password: str = ""
    machine_password_file: str = ""

    # Decision settings
    decision_duration: str = "24h"
    decision_type: str = "ban"
    decision_origin: str = "uri-firewall-sync"
    decision_scenario: str = "external/uri-rule"
    decision_reason: str = "external_blocklist"
    batch_size: int = 1000

    # Allowlist
    allow_list: list[str] = field(default_factory=list)
    allowlist_github: bool = False
    allowlist_private: bool = True

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    dry_run: bool = False

    # Prometheus metrics
    metrics_enabled: bool = True
    pushgateway_url: str = "localhost:9091"

    # Seconds between scheduler passes; 0 = single pass
    tick_interval: int = 0

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables (and a .env file).

        Raises:
            EnvValidationError: invalid booleans, numbers or rule definitions.
        """
        load_dotenv()

        errors = validate_bool_env_vars()

        def get_bool(key: str, default: bool) -> bool:
            val = os.getenv(key, str(default)).lower()
            return val in ("true", "1", "yes", "on")

        def get_int(key: str, default: int) -> int:
            value = os.getenv(key, str(default))
            try:
                return int(value)
            except ValueError:
                errors.append(f"Invalid value for {key}: '{value}' (expected an integer)")
                return default

        rules: list[RuleDefinition] = []
        try:
            rules = parse_rule_definitions(os.getenv("FIREWALL_RULES", ""))
        except EnvValidationError as e:
            errors.extend(e.errors)

        config = cls(
            rules=rules,
            fetch_timeout=get_int("FETCH_TIMEOUT", 60),
            max_retries=get_int("MAX_RETRIES", 3),
            lapi_url=os.getenv("CROWDSEC_LAPI_URL", "http://localhost:8080").rstrip("/"),
            lapi_key=os.getenv("CROWDSEC_LAPI_KEY", ""),
            lapi_key_file=os.getenv("CROWDSEC_LAPI_KEY_FILE", ""),
            machine_id=os.getenv("CROWDSEC_MACHINE_ID", ""),
            machine_password=os.getenv("CROWDSEC_MACHINE_PASSWORD", ""),
            machine_password_file=os.getenv("CROWDSEC_MACHINE_PASSWORD_FILE", ""),
            decision_duration=os.getenv("DECISION_DURATION", "24h"),
            decision_type=os.getenv("DECISION_TYPE", "ban"),
            decision_origin=os.getenv("DECISION_ORIGIN", "uri-firewall-sync"),
            decision_scenario=os.getenv("DECISION_SCENARIO", "external/uri-rule"),
            decision_reason=os.getenv("DECISION_REASON", "external_blocklist"),
            batch_size=get_int("BATCH_SIZE", 1000),
            allow_list=[e.strip() for e in os.getenv("ALLOWLIST", "").split(",") if e.strip()],
            allowlist_github=get_bool("ALLOWLIST_GITHUB", False),
            allowlist_private=get_bool("ALLOWLIST_PRIVATE", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_timestamps=get_bool("LOG_TIMESTAMPS", True),
            dry_run=get_bool("DRY_RUN", False),
            metrics_enabled=get_bool("METRICS_ENABLED", True),
            pushgateway_url=os.getenv("METRICS_PUSHGATEWAY_URL", "localhost:9091"),
            tick_interval=get_int("TICK_INTERVAL", 0),
        )

        if errors:
            raise EnvValidationError(errors)
        return config


# =============================================================================
# Prometheus Metrics
# =============================================================================

class MetricsCollector:
    """
    Per-rule Prometheus gauges, pushed to a Pushgateway after each pass.

      - uri_firewall_rule_status{rule}            1 = success, 0 = failed
      - uri_firewall_rule_ranges{rule}            ranges submitted
      - uri_firewall_rule_duration_seconds{rule}  cycle duration
      - uri_firewall_errors_total{error_type, rule}
            error_type: "fetch" | "apply" | "cancelled" | "unexpected"
      - uri_firewall_last_run_timestamp

    Rules skipped by their rate gate are not recorded. The registry is
    rebuilt by reset() at the start of every pass and the job is deleted
    from the gateway before each push, so series from earlier passes do
    not linger.
    """

    JOB = "uri-firewall-sync"

    def __init__(self, pushgateway_url: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.pushgateway_url = pushgateway_url
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.reset()

    def reset(self) -> None:
        self.registry = CollectorRegistry()

        self.rule_status = Gauge(
            "uri_firewall_rule_status",
            "Per-rule update status: 1=success, 0=failed",
            ["rule"],
            registry=self.registry,
        )
        self.rule_ranges = Gauge(
            "uri_firewall_rule_ranges",
            "Number of ranges submitted to the firewall by each rule",
            ["rule"],
            registry=self.registry,
        )
        self.rule_duration_seconds = Gauge(
            "uri_firewall_rule_duration_seconds",
            "Time taken by each rule's update cycle (seconds)",
            ["rule"],
            registry=self.registry,
        )
        self.errors_total = Gauge(
            "uri_firewall_errors_total",
            "Update errors labelled by type and rule",
            ["error_type", "rule"],
            registry=self.registry,
        )
        self.last_run_timestamp = Gauge(
            "uri_firewall_last_run_timestamp",
            "Unix timestamp of the last scheduler pass",
            registry=self.registry,
        )

    def record_success(self, result: UpdateResult) -> None:
        self.rule_status.labels(rule=result.rule_prefix).set(1)
        self.rule_ranges.labels(rule=result.rule_prefix).set(result.blocked)
        self.rule_duration_seconds.labels(rule=result.rule_prefix).set(result.duration)

    def record_failure(self, rule_prefix: str, error_type: str) -> None:
        self.rule_status.labels(rule=rule_prefix).set(0)
        self.errors_total.labels(error_type=error_type, rule=rule_prefix).inc()

    def mark_pass(self) -> None:
        self.last_run_timestamp.set(time.time())

    def push(self) -> bool:
        """Push all metrics to the Pushgateway, replacing the previous push."""
        if not self.pushgateway_url:
            return False
        try:
            try:
                delete_from_gateway(self.pushgateway_url, job=self.JOB)
            except OSError as del_exc:
                self.logger.warning(
                    f"Could not delete stale metrics from Pushgateway "
                    f"({self.pushgateway_url}): {del_exc}"
                )

            push_to_gateway(self.pushgateway_url, job=self.JOB, registry=self.registry)
            self.logger.debug(f"Metrics pushed to Pushgateway at {self.pushgateway_url}")
            return True
        except OSError as e:
            self.logger.error(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False


# =============================================================================
# Scheduler
# =============================================================================

@dataclass
class PassStats:
    """Statistics from one scheduler pass."""
    rules_run: int = 0
    rules_skipped: int = 0
    rules_failed: int = 0
    ranges_blocked: int = 0
    cancelled: bool = False


def build_rule_sources(
    definitions: Iterable[RuleDefinition],
    firewall: Firewall,
    whitelist_checker: Optional[WhitelistChecker],
    timeout: int = 60,
    logger: Optional[logging.Logger] = None,
) -> list[RuleSource]:
    """Create rule sources, dropping duplicates (first definition wins)."""
    logger = logger or logging.getLogger(LOGGER_NAME)
    sources: list[RuleSource] = []
    seen: Set[RuleSource] = set()

    for definition in definitions:
        source = RuleSource(
            firewall=firewall,
            whitelist_checker=whitelist_checker,
            rule_prefix=definition.rule_prefix,
            interval=definition.interval,
            uri=definition.uri,
            timeout=timeout,
            logger=logger,
        )
        if source in seen:
            logger.warning(f"Ignoring duplicate rule ({source})")
            source.close()
            continue
        seen.add(source)
        sources.append(source)

    return sources


def run_rules(
    sources: Iterable[RuleSource],
    cancel_event: threading.Event,
    metrics: Optional[MetricsCollector] = None,
    logger: Optional[logging.Logger] = None,
) -> PassStats:
    """
    Give every rule source one chance to update.

    Sources are driven one at a time, which is the single-caller
    guarantee RuleSource relies on. A failing source is logged and the pass
    moves on; cancellation ends the pass.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    stats = PassStats()

    for source in sources:
        if cancel_event.is_set():
            stats.cancelled = True
            break

        try:
            result = source.update(cancel_event)
        except UpdateCancelledError:
            logger.info(f"{source.rule_prefix}: update cancelled")
            if metrics:
                metrics.record_failure(source.rule_prefix, "cancelled")
            stats.cancelled = True
            break
        except FetchFailedError as e:
            logger.warning(f"{source.rule_prefix}: source unavailable ({e})")
            stats.rules_failed += 1
            if metrics:
                metrics.record_failure(source.rule_prefix, "fetch")
            continue
        except ApplyFailedError as e:
            logger.error(f"{source.rule_prefix}: {e}")
            stats.rules_failed += 1
            if metrics:
                metrics.record_failure(source.rule_prefix, "apply")
            continue
        except Exception:
            logger.exception(f"{source.rule_prefix}: unexpected error")
            stats.rules_failed += 1
            if metrics:
                metrics.record_failure(source.rule_prefix, "unexpected")
            continue

        if result is None:
            stats.rules_skipped += 1
            continue

        stats.rules_run += 1
        stats.ranges_blocked += result.blocked
        if metrics:
            metrics.record_success(result)

    if metrics:
        metrics.mark_pass()
    return stats


# =============================================================================
# Main
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure logging with structured output."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    formatter = logging.Formatter(
        format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    return logger


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Keep firewall rule groups in sync with IP blocklists from files or URLs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  FIREWALL_RULES           Rules as prefix,interval,uri separated by ';' or newlines
                           interval: seconds or [D:]HH:MM:SS
  FETCH_TIMEOUT            Seconds per feed fetch (default: 60)
  CROWDSEC_LAPI_URL        CrowdSec LAPI URL (default: http://localhost:8080)
  CROWDSEC_LAPI_KEY[_FILE] Bouncer key / key file (reads)
  CROWDSEC_MACHINE_ID      Machine id (writes)
  CROWDSEC_MACHINE_PASSWORD[_FILE]
  DECISION_DURATION        How long decisions last (default: 24h)
  ALLOWLIST                Comma separated IPs/CIDRs never to block
  ALLOWLIST_PRIVATE        Never block private/reserved ranges (default: true)
  ALLOWLIST_GITHUB         Never block GitHub ranges (default: false)
  LOG_LEVEL                DEBUG, INFO, WARN, ERROR (default: INFO)
  DRY_RUN                  Set to true for dry run mode
  METRICS_ENABLED          Push Prometheus metrics (default: true)
  METRICS_PUSHGATEWAY_URL  Pushgateway address (default: localhost:9091)
  TICK_INTERVAL            Daemon mode: seconds between passes (0=once, default: 0)

Examples:
  FIREWALL_RULES="AbuseFeed_,01:00:00,https://example.org/abuse.txt" ./uri_firewall_sync.py
  ./uri_firewall_sync.py --list-rules
  ./uri_firewall_sync.py --delete-rules
""",
    )

    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-n", "--dry-run", action="store_true",
                        help="Don't change the firewall, just show what would be done")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--lapi-url", help="CrowdSec LAPI URL (overrides CROWDSEC_LAPI_URL)")
    parser.add_argument("--interval", type=int, metavar="SECONDS",
                        help="Run in daemon mode: one pass every N seconds (overrides TICK_INTERVAL)")
    parser.add_argument("--once", action="store_true", help="Run a single pass even if TICK_INTERVAL is set")
    parser.add_argument("--validate", action="store_true",
                        help="Validate configuration and exit without running")
    parser.add_argument("--list-rules", action="store_true", help="List configured rules and exit")
    parser.add_argument("--delete-rules", action="store_true",
                        help="Delete all firewall rules created by the configured rules and exit")
    parser.add_argument("--pushgateway-url",
                        help="Pushgateway address (overrides METRICS_PUSHGATEWAY_URL)")
    parser.add_argument("--no-metrics", action="store_true", help="Disable Prometheus metrics")

    return parser.parse_args(argv)


def build_firewall(config: Config, session: requests.Session, logger: logging.Logger) -> CrowdSecFirewall:
    # _FILE variants take precedence over direct values
    lapi_key = config.lapi_key
    if config.lapi_key_file:
        lapi_key = read_secret_file(config.lapi_key_file)
        logger.debug(f"Read LAPI key from {config.lapi_key_file}")

    machine_password = config.machine_password
    if config.machine_password_file:
        machine_password = read_secret_file(config.machine_password_file)
        logger.debug(f"Read machine password from {config.machine_password_file}")

    return CrowdSecFirewall(
        base_url=config.lapi_url,
        api_key=lapi_key,
        machine_id=config.machine_id,
        machine_password=machine_password,
        session=session,
        duration=config.decision_duration,
        decision_type=config.decision_type,
        origin=config.decision_origin,
        scenario=config.decision_scenario,
        reason=config.decision_reason,
        batch_size=config.batch_size,
        dry_run=config.dry_run,
        logger=logger,
    )


def list_rules(config: Config, logger: logging.Logger) -> None:
    logger.info(f"Configured rules: {len(config.rules)}")
    for rule in config.rules:
        logger.info(f"  {rule.rule_prefix:<24} every {rule.interval}  {rule.uri}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = Config.from_env()
    except EnvValidationError as e:
        logging.basicConfig(format="[%(levelname)s] %(message)s")
        log = logging.getLogger(LOGGER_NAME)
        log.error("Configuration validation failed:")
        for error in e.errors:
            for line in error.split("\n"):
                log.error(f"  {line}")
        return 1

    if args.dry_run:
        config.dry_run = True
    if args.debug:
        config.log_level = "DEBUG"
    if args.lapi_url:
        config.lapi_url = args.lapi_url
    if args.pushgateway_url:
        config.pushgateway_url = args.pushgateway_url
    if args.no_metrics:
        config.metrics_enabled = False
    if args.interval is not None:
        config.tick_interval = args.interval
    if args.once:
        config.tick_interval = 0

    logger = setup_logging(config)

    if args.list_rules or args.validate:
        logger.info(f"URI Firewall Sync v{__version__}")
        if args.validate:
            logger.info("Configuration validation passed!")
        list_rules(config, logger)
        return 0

    if not config.rules:
        logger.error("No rules configured. Set FIREWALL_RULES.")
        return 1

    session = create_http_session(config.max_retries)
    try:
        firewall = build_firewall(config, session, logger)
        if not config.dry_run:
            if not firewall.can_write():
                logger.error(
                    "Machine credentials required for writing decisions.\n"
                    "Set CROWDSEC_MACHINE_ID and CROWDSEC_MACHINE_PASSWORD or CROWDSEC_MACHINE_PASSWORD_FILE."
                )
                return 1
            if not firewall.health_check():
                logger.error("Cannot connect to CrowdSec LAPI")
                return 1
            logger.info("Connected to CrowdSec LAPI")

        allowlist = build_allowlist(config, session=session, logger=logger)
        sources = build_rule_sources(
            config.rules, firewall, allowlist, timeout=config.fetch_timeout, logger=logger,
        )
        try:
            if args.delete_rules:
                for source in sources:
                    logger.info(f"Deleting firewall rules under {source.rule_prefix}")
                    source.delete_rules()
                return 0

            metrics = None
            if config.metrics_enabled:
                metrics = MetricsCollector(pushgateway_url=config.pushgateway_url, logger=logger)

            if config.tick_interval > 0:
                return _run_daemon(config, sources, metrics, logger)
            return _run_once(sources, metrics, logger)
        finally:
            for source in sources:
                source.close()
    finally:
        session.close()


def _run_once(sources: list[RuleSource], metrics: Optional[MetricsCollector],
              logger: logging.Logger) -> int:
    """Execute a single scheduler pass."""
    cancel_event = threading.Event()
    try:
        stats = run_rules(sources, cancel_event, metrics=metrics, logger=logger)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    if metrics:
        metrics.push()

    logger.info(
        f"Rules: {stats.rules_run} applied, {stats.rules_failed} failed, "
        f"{stats.ranges_blocked} ranges blocked"
    )
    if stats.rules_failed and stats.rules_run == 0:
        return 1
    return 0


def _run_daemon(config: Config, sources: list[RuleSource],
                metrics: Optional[MetricsCollector], logger: logging.Logger) -> int:
    """Run scheduler passes every tick until SIGINT/SIGTERM."""
    cancel_event = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, cancelling current update and shutting down...")
        cancel_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info(f"Daemon mode: checking {len(sources)} rules every {config.tick_interval}s (Ctrl+C to stop)")

    pass_number = 0
    while not cancel_event.is_set():
        pass_number += 1
        if metrics:
            metrics.reset()

        stats = run_rules(sources, cancel_event, metrics=metrics, logger=logger)
        if stats.rules_run or stats.rules_failed:
            logger.info(
                f"Pass #{pass_number}: {stats.rules_run} applied, {stats.rules_skipped} not due, "
                f"{stats.rules_failed} failed"
            )
            if metrics:
                metrics.push()

        cancel_event.wait(config.tick_interval)

    logger.info("Daemon stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
