from __future__ import annotations

import allure

from taskline.pipeline.failure_classifier import classify_agent_failure

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Retry Policy"),
]


def test_connection_reset_is_network_transient() -> None:
    classified = classify_agent_failure(stdout="", stderr="Error: read ECONNRESET")

    assert classified.transient
    assert classified.matched_rule == "network_transient"
    assert classified.matched_pattern == "econnreset"


def test_service_unavailable_is_capacity_transient() -> None:
    classified = classify_agent_failure(stdout="API Error: 503 Service Unavailable", stderr="")

    assert classified.transient
    assert classified.matched_rule == "capacity_transient"
    assert classified.matched_pattern == "503"


def test_rate_limit_is_capacity_transient() -> None:
    classified = classify_agent_failure(stdout="", stderr="Rate limit exceeded, slow down")

    assert classified.transient
    assert classified.matched_pattern == "rate limit"


def test_network_rules_win_over_capacity_rules() -> None:
    classified = classify_agent_failure(
        stdout="overloaded",
        stderr="socket hang up",
    )

    assert classified.matched_rule == "network_transient"


def test_supervisor_timeout_is_not_retried() -> None:
    classified = classify_agent_failure(stdout="", stderr="Timed out after 600s")

    assert not classified.transient
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.matched_pattern is None


def test_real_failures_are_not_retried() -> None:
    classified = classify_agent_failure(stdout="SyntaxError: invalid syntax", stderr="")

    assert not classified.transient
