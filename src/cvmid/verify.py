"""Probe a deployed endpoint for the identification header.

The checks mirror what an operator would do by hand with ``curl``:
connectivity, header presence and shape, the health route, response time,
consistency across repeated requests and, for remote URLs, how requests are
spread across backends behind a load balancer.
"""
from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit

import requests

from .identity import parse_header_value

DEFAULT_URL = "http://localhost/"
DEFAULT_TIMEOUT = 10.0
CONSISTENCY_SAMPLES = 5
DISTRIBUTION_SAMPLES = 10
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class CheckStatus(str, Enum):
    """Outcome of a single verification check."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    INFO = "info"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is CheckStatus.FAIL


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Outcome of running a check."""

    id: str
    category: str
    status: CheckStatus
    message: str


@dataclass(slots=True, frozen=True)
class VerificationReport:
    """All results of a verification run."""

    url: str
    results: Sequence[CheckResult]

    @property
    def failed(self) -> bool:
        """Return ``True`` when any check failed."""
        return any(result.status.is_failure for result in self.results)

    def totals(self) -> dict[CheckStatus, int]:
        """Count results per status."""
        counts = Counter(result.status for result in self.results)
        return {status: counts.get(status, 0) for status in CheckStatus}


def is_local_url(url: str) -> bool:
    """Return ``True`` when *url* targets the local host."""
    host = urlsplit(url).hostname or ""
    return host in LOCAL_HOSTS


def health_url(url: str) -> str:
    """Return the ``/health`` URL next to *url*."""
    return f"{url.rstrip('/')}/health"


@dataclass(slots=True)
class EndpointVerifier:
    """Run the endpoint checks against *url*."""

    url: str = DEFAULT_URL
    header_name: str = "X-CVM-Info"
    timeout: float = DEFAULT_TIMEOUT
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep

    def run(self, *, include_distribution: bool | None = None) -> VerificationReport:
        """Execute every check; connectivity failures stop the run early."""
        results: list[CheckResult] = []
        connectivity = self.check_connectivity()
        results.extend(connectivity)
        if any(result.status.is_failure for result in connectivity[:1]):
            return VerificationReport(url=self.url, results=tuple(results))

        results.extend(self.check_header())
        results.append(self.check_health())
        results.extend(self.check_response_time())
        results.append(self.check_consistency())
        if include_distribution is None:
            include_distribution = not is_local_url(self.url)
        if include_distribution:
            results.extend(self.check_distribution())
        return VerificationReport(url=self.url, results=tuple(results))

    # ------------------------------------------------------------------
    def check_connectivity(self) -> list[CheckResult]:
        """Confirm the endpoint answers and returns HTTP 200."""
        response = self._get(self.url)
        if response is None:
            return [_fail("http-connectivity", "connectivity", f"Cannot connect to {self.url}")]
        results = [_pass("http-connectivity", "connectivity", f"HTTP connectivity to {self.url}")]
        if response.status_code == 200:
            results.append(
                _pass("http-status", "connectivity", f"HTTP response code: {response.status_code}")
            )
        else:
            results.append(
                _fail(
                    "http-status",
                    "connectivity",
                    f"HTTP response code: {response.status_code} (expected 200)",
                )
            )
        return results

    def check_header(self) -> list[CheckResult]:
        """Confirm the identification header is present and well formed."""
        value = self._header_value()
        if value is None:
            missing = f"{self.header_name} header not found"
            return [_fail("header-present", "identification", missing)]
        results = [_pass("header-present", "identification", f"{self.header_name}: {value}")]
        segments = parse_header_value(value)
        for label, segment in zip(("Zone", "IP", "Instance"), segments, strict=False):
            check_id = f"header-{label.lower()}"
            results.append(_info(check_id, "identification", f"{label}: {segment}"))
        if len(segments) >= 3 and all(segments[:3]):
            results.append(
                _pass(
                    "header-format",
                    "identification",
                    "Header format is correct (zone | ip | instance)",
                )
            )
        else:
            results.append(
                _warn("header-format", "identification", "Header format may be incorrect")
            )
        return results

    def check_health(self) -> CheckResult:
        """Confirm the health route answers ``OK``."""
        response = self._get(health_url(self.url))
        if response is not None and "OK" in response.text:
            return _pass("health", "identification", "Health endpoint is working")
        return _warn("health", "identification", "Health endpoint not found or not working")

    def check_response_time(self) -> list[CheckResult]:
        """Grade the response time of a single request."""
        started = time.perf_counter()
        response = self._get(self.url)
        elapsed = time.perf_counter() - started
        if response is None:
            return [_fail("response-time", "performance", "No response while measuring latency")]
        results = [_info("response-time", "performance", f"Response time: {elapsed:.3f}s")]
        if elapsed < 1.0:
            results.append(_pass("response-grade", "performance", "Response time is good (< 1s)"))
        elif elapsed < 3.0:
            results.append(
                _warn("response-grade", "performance", "Response time is acceptable (< 3s)")
            )
        else:
            results.append(_fail("response-grade", "performance", "Response time is slow (> 3s)"))
        return results

    def check_consistency(self, samples: int = CONSISTENCY_SAMPLES) -> CheckResult:
        """Compare the header across repeated requests."""
        observed = self._sample_headers(samples)
        if len(set(observed)) <= 1:
            return _pass(
                "consistency",
                "performance",
                "CVM identification is consistent across requests",
            )
        return _info(
            "consistency",
            "performance",
            "CVM identification varies (normal for load balancers)",
        )

    def check_distribution(self, samples: int = DISTRIBUTION_SAMPLES) -> list[CheckResult]:
        """Summarise which backends answered *samples* requests."""
        counts = Counter(value for value in self._sample_headers(samples) if value)
        if not counts:
            return [_fail("lb-distribution", "load-balancer", "No CVM identification found")]
        results = [_pass("lb-distribution", "load-balancer", "Load balancer distribution:")]
        for backend, count in counts.most_common():
            percentage = count * 100 // samples
            results.append(
                _info("lb-backend", "load-balancer", f"{backend}: {count} requests ({percentage}%)")
            )
        if len(counts) > 1:
            results.append(
                _pass(
                    "lb-backends",
                    "load-balancer",
                    f"Multiple backend instances detected ({len(counts)} instances)",
                )
            )
        else:
            results.append(
                _info(
                    "lb-backends",
                    "load-balancer",
                    "Single backend instance (not load balanced or sticky sessions)",
                )
            )
        return results

    # ------------------------------------------------------------------
    def _sample_headers(self, samples: int) -> list[str | None]:
        observed: list[str | None] = []
        for index in range(samples):
            if index:
                self.sleep(0.1)
            observed.append(self._header_value())
        return observed

    def _header_value(self) -> str | None:
        try:
            response = self.session.head(self.url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException:
            return None
        value = response.headers.get(self.header_name)
        return value.strip() if value else None

    def _get(self, url: str) -> requests.Response | None:
        try:
            return self.session.get(url, timeout=self.timeout)
        except requests.RequestException:
            return None


def _pass(check_id: str, category: str, message: str) -> CheckResult:
    return CheckResult(check_id, category, CheckStatus.PASS, message)


def _warn(check_id: str, category: str, message: str) -> CheckResult:
    return CheckResult(check_id, category, CheckStatus.WARN, message)


def _fail(check_id: str, category: str, message: str) -> CheckResult:
    return CheckResult(check_id, category, CheckStatus.FAIL, message)


def _info(check_id: str, category: str, message: str) -> CheckResult:
    return CheckResult(check_id, category, CheckStatus.INFO, message)


__all__ = [
    "CheckResult",
    "CheckStatus",
    "DEFAULT_URL",
    "EndpointVerifier",
    "VerificationReport",
    "health_url",
    "is_local_url",
]
