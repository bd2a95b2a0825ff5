"""Tests for the loop guard and the shared-secret helpers."""

from __future__ import annotations

import pytest

from src.pricesync.core.security import extract_bearer_token, verify_shared_secret
from src.pricesync.sync.adapters.remote import UpdateChannel
from src.pricesync.sync.fields import FieldKey, FieldSet
from src.pricesync.sync.loop_guard import OWN_ORIGIN_REASON, SKIP_FLAG_REASON, LoopGuard, parse_flag
from src.pricesync.sync.schemas import WebhookEvent


def _event(skip_flag: bool = False, origin: str | None = None) -> WebhookEvent:
    return WebhookEvent(
        event_type="item.pricing.updated",
        remote_item_code="OAK-A",
        remote_id="1011",
        fields=FieldSet({FieldKey.PRICE_CUT: "89.99"}),
        skip_flag=skip_flag,
        origin=origin,
    )


class TestParseFlag:
    @pytest.mark.parametrize("value", ["T", "t", "true", "TRUE", "1", "yes", True, 1])
    def test_truthy(self, value):
        assert parse_flag(value) is True

    @pytest.mark.parametrize("value", ["F", "false", "0", "", None, False, 0, "no"])
    def test_falsy(self, value):
        assert parse_flag(value) is False


class TestLoopGuard:
    def test_plain_event_passes(self):
        decision = LoopGuard("pricesync").should_suppress(_event())
        assert decision.suppress is False
        assert decision.reason is None

    def test_skip_flag_suppresses(self):
        decision = LoopGuard("pricesync").should_suppress(_event(skip_flag=True))
        assert decision.suppress is True
        assert decision.reason == SKIP_FLAG_REASON

    def test_own_origin_suppresses(self):
        decision = LoopGuard("pricesync").should_suppress(_event(origin="pricesync"))
        assert decision.suppress is True
        assert decision.reason == OWN_ORIGIN_REASON

    def test_foreign_origin_passes(self):
        assert LoopGuard("pricesync").should_suppress(_event(origin="ui")).suppress is False

    def test_origin_check_disabled_without_marker(self):
        assert LoopGuard(None).should_suppress(_event(origin="pricesync")).suppress is False

    def test_outbound_channel_is_programmatic(self):
        assert LoopGuard.outbound_channel() == UpdateChannel.PROGRAMMATIC


class TestSharedSecret:
    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("bearer abc") == "abc"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer "])
    def test_extract_bearer_token_invalid(self, header):
        assert extract_bearer_token(header) is None

    def test_verify(self):
        assert verify_shared_secret("s3cret", "s3cret") is True
        assert verify_shared_secret("wrong", "s3cret") is False
        assert verify_shared_secret(None, "s3cret") is False

    def test_empty_expected_never_matches(self):
        assert verify_shared_secret("", "") is False
        assert verify_shared_secret("anything", "") is False
