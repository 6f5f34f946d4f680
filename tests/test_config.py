from decimal import Decimal

from checkout_service.config import CheckoutPolicy, Settings


def test_defaults():
    policy = Settings(_env_file=None).checkout_policy()
    assert policy == CheckoutPolicy()
    assert policy.price_drift_threshold_percent == Decimal("10")
    assert policy.tax_rate == Decimal("0")


def test_policy_from_environment(monkeypatch):
    monkeypatch.setenv("CHECKOUT_TAX_RATE", "0.075")
    monkeypatch.setenv("CHECKOUT_ORDER_NUMBER_PREFIX", "SHOP")
    monkeypatch.setenv("CHECKOUT_STORE_TIMEOUT_SECONDS", "2.5")

    policy = Settings(_env_file=None).checkout_policy()

    assert policy.tax_rate == Decimal("0.075")
    assert policy.order_number_prefix == "SHOP"
    assert policy.store_timeout_seconds == 2.5


def test_schema_is_created_on_startup_by_default():
    assert Settings(_env_file=None).create_schema is True
