"""Tests for intent validation."""

import time
from dataclasses import replace

import pytest

from conftest import OTHER_KEY, SENDER
from relayb0t.errors import ValidationError
from relayb0t.execution.validator import ZERO_ADDRESS, IntentValidator


@pytest.fixture
def validator(registry, domain):
    return IntentValidator(registry, domain)


def _cause(validator, intent):
    with pytest.raises(ValidationError) as exc_info:
        validator.validate(intent)
    return exc_info.value.cause


def test_valid_intent_passes(validator, make_intent):
    validator.validate(make_intent())


def test_expired_deadline(validator, make_intent):
    intent = make_intent(deadline=int(time.time()) - 10)

    assert _cause(validator, intent) == ValidationError.EXPIRED


def test_deadline_checked_first(validator, make_intent):
    """Test an expired intent with a broken signature reports expiry."""
    intent = replace(make_intent(deadline=int(time.time()) - 10), amount=1)

    assert _cause(validator, intent) == ValidationError.EXPIRED


def test_tampered_field_breaks_signature(validator, make_intent):
    intent = replace(make_intent(), amount=200 * 10**6)

    assert _cause(validator, intent) == ValidationError.BAD_SIGNATURE


def test_signature_by_another_key(validator, make_intent):
    intent = replace(make_intent(key=OTHER_KEY), sender=SENDER)

    assert _cause(validator, intent) == ValidationError.BAD_SIGNATURE


def test_undecodable_signature(validator, make_intent):
    intent = replace(make_intent(), signature="0x1234")

    assert _cause(validator, intent) == ValidationError.BAD_SIGNATURE


def test_unsupported_asset(validator, make_intent):
    intent = make_intent(asset="0x" + "bb" * 20)

    assert _cause(validator, intent) == ValidationError.UNSUPPORTED_ASSET


def test_paused_asset(validator, registry, make_intent):
    registry.set_paused("0x" + "aa" * 20, True)

    assert _cause(validator, make_intent()) == ValidationError.ASSET_PAUSED

    registry.set_paused("0x" + "aa" * 20, False)
    validator.validate(make_intent())


def test_zero_amount(validator, make_intent):
    assert _cause(validator, make_intent(amount=0)) == ValidationError.MALFORMED


def test_zero_recipient(validator, make_intent):
    intent = make_intent(recipient=ZERO_ADDRESS)

    assert _cause(validator, intent) == ValidationError.MALFORMED


def test_invalid_address(validator, make_intent):
    intent = replace(make_intent(), recipient="not-an-address")

    assert _cause(validator, intent) == ValidationError.MALFORMED


def test_out_of_range_nonce(validator, make_intent):
    intent = replace(make_intent(), nonce=-1)

    assert _cause(validator, intent) == ValidationError.MALFORMED
