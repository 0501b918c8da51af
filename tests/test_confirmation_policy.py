from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from depositwatch.domain.confirmation_policy import DEFAULT_REQUIRED_CONFIRMATIONS, ConfirmationPolicy
from depositwatch.domain.errors import ConfigurationError, UnsupportedCurrencyError
from depositwatch.domain.models import Currency


def test_default_policy_covers_every_currency() -> None:
    policy = ConfirmationPolicy()

    for currency in Currency:
        assert policy.required_confirmations(currency) >= 1
    assert policy.required_confirmations("btc") == DEFAULT_REQUIRED_CONFIRMATIONS[Currency.BTC]


def test_unknown_currency_is_an_explicit_error() -> None:
    with pytest.raises(UnsupportedCurrencyError):
        ConfirmationPolicy().required_confirmations("LTC")


def test_currency_without_policy_entry_is_an_error_not_zero() -> None:
    policy = ConfirmationPolicy(required={Currency.BTC: 3})

    with pytest.raises(UnsupportedCurrencyError):
        policy.required_confirmations(Currency.DOGE)


def test_policy_rejects_non_positive_thresholds() -> None:
    with pytest.raises(ConfigurationError):
        ConfirmationPolicy(required={Currency.BTC: 0})


@given(required=st.integers(min_value=1, max_value=500), currency=st.sampled_from(list(Currency)))
def test_threshold_boundary(required: int, currency: Currency) -> None:
    policy = ConfirmationPolicy(required={currency: required})

    assert not policy.is_confirmed(currency, required - 1)
    assert policy.is_confirmed(currency, required)
    assert policy.is_confirmed(currency, required + 1)
