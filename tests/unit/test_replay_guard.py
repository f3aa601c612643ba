"""Tests for the timestamp freshness window."""

from unittest.mock import patch

import pytest

from marketplace.auth import TIMESTAMP_WINDOW_MS, is_timestamp_valid
from marketplace.exceptions import StaleTimestampError
from marketplace.services.gateway import AttestationGateway

NOW = 1_760_000_000_000


class TestIsTimestampValid:
    """Accepted iff |now - ts| <= 300 000 ms, skew in either direction."""

    def test_window_is_five_minutes(self):
        assert TIMESTAMP_WINDOW_MS == 300_000

    @pytest.mark.parametrize("offset", [0, 1, 299_999, 300_000, -1, -300_000])
    def test_inside_window(self, offset):
        assert is_timestamp_valid(NOW + offset, now=NOW)

    @pytest.mark.parametrize("offset", [300_001, -300_001, 3_600_000, -NOW])
    def test_outside_window(self, offset):
        assert not is_timestamp_valid(NOW + offset, now=NOW)

    def test_defaults_to_wall_clock(self):
        with patch("marketplace.auth.now_ms", return_value=NOW):
            assert is_timestamp_valid(NOW - 300_000)
            assert not is_timestamp_valid(NOW - 300_001)


class TestGatewayFreshness:
    def test_stale_payload_raises(self):
        with patch("marketplace.auth.now_ms", return_value=NOW):
            with pytest.raises(StaleTimestampError) as exc:
                AttestationGateway.check_freshness(NOW + 300_001)
        assert exc.value.status_code == 400

    def test_fresh_payload_passes(self):
        with patch("marketplace.auth.now_ms", return_value=NOW):
            AttestationGateway.check_freshness(NOW - 300_000)
