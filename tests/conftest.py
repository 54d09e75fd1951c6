"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

import pytest
import requests


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeResponse:
    """Stand-in for ``requests.Response``."""

    status_code: int = 200
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)


class FakeSession:
    """Route-table replacement for ``requests.Session``.

    ``routes`` maps a URL to a response or an exception instance. Unknown
    URLs behave like an unreachable host. ``head`` answers cycle through
    ``head_headers``.
    """

    def __init__(
        self,
        routes: Mapping[str, FakeResponse | Exception] | None = None,
        head_headers: Sequence[Mapping[str, str]] | None = None,
    ) -> None:
        """Store the canned answers."""
        self.routes = dict(routes or {})
        self.head_headers = [dict(item) for item in head_headers or []]
        self.calls: list[tuple[str, str, float | None]] = []
        self._head_count = 0

    def get(self, url: str, timeout: float | None = None) -> FakeResponse:
        """Return the routed response for *url*."""
        self.calls.append(("GET", url, timeout))
        outcome = self.routes.get(url)
        if outcome is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def head(
        self,
        url: str,
        timeout: float | None = None,
        allow_redirects: bool = True,
    ) -> FakeResponse:
        """Return the next canned header set."""
        self.calls.append(("HEAD", url, timeout))
        if not self.head_headers:
            raise requests.ConnectionError(f"no route to {url}")
        headers = self.head_headers[self._head_count % len(self.head_headers)]
        self._head_count += 1
        return FakeResponse(headers=headers)


@pytest.fixture
def make_session() -> Callable[..., FakeSession]:
    """Return a factory for :class:`FakeSession` objects."""
    return FakeSession


@pytest.fixture
def make_response() -> Callable[..., FakeResponse]:
    """Return a factory for :class:`FakeResponse` objects."""
    return FakeResponse
