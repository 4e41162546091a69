"""
Small utility tests: backoff, retry classification, rounding, token
redaction in logs.
"""
import aiohttp
import pytest

from app.connectors.clickup import ClickUpAPIError
from app.utils.helpers import normalize_token, round_metric, slugify
from app.utils.logger import log, redact_tokens
from app.utils.retry import calculate_backoff, is_retryable_error


def test_backoff_doubles_and_caps():
    delays = [calculate_backoff(n, base_delay=1.0, max_delay=5.0, jitter=False) for n in range(1, 6)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_stays_within_quarter():
    for _ in range(20):
        assert 2.0 <= calculate_backoff(2, base_delay=1.0) <= 2.5


@pytest.mark.parametrize("error,expected", [
    (ClickUpAPIError(429, "rate limited"), True),
    (ClickUpAPIError(502, "bad gateway"), True),
    (ClickUpAPIError(401, "unauthorized"), False),
    (ClickUpAPIError(None, "Token has no ClickUp teams available"), False),
    (aiohttp.ClientConnectionError("refused"), True),
    (TimeoutError(), True),
    (ValueError("request timed out"), True),
    (ValueError("bad json"), False),
])
def test_retry_classification(error, expected):
    assert is_retryable_error(error) is expected


@pytest.mark.parametrize("value,expected", [
    (0.585, 0.59),
    (2.675, 2.68),
    (8.0, 8.0),
    (None, None),
])
def test_round_metric_half_up(value, expected):
    assert round_metric(value) == expected


def test_token_normalization_and_slugs():
    assert normalize_token("Bearer pk_123") == "pk_123"
    assert normalize_token("   ") is None
    assert slugify("  Açaí Ops  Team ") == "acai-ops-team"


def test_tokens_are_masked_in_log_records():
    messages = []
    handler_id = log.add(messages.append, format="{message}")
    try:
        log.info("ClickUp rejected pk_12345678_ABCDEFGH for Acme")
    finally:
        log.remove(handler_id)

    assert "pk_12345678_ABCDEFGH" not in messages[0]
    assert "pk_...EFGH" in messages[0]


def test_redact_leaves_other_text_alone():
    assert redact_tokens("no secrets here") == "no secrets here"
