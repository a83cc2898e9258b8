"""Provider registry tests."""

import pytest

from quotehub.core.error_handler import ConfigError, ProviderNotFound, QuoteValidationError
from quotehub.modules.quote.models import parse_criteria
from quotehub.modules.quote.registry import ProviderRegistry, default_provider_catalogue
from tests.conftest import make_provider


def test_default_catalogue_runs_in_mock_mode_without_keys(no_carrier_keys) -> None:
    registry = ProviderRegistry()

    ids = {p.id for p in registry.all()}
    assert ids == {"jas_assure", "life_secure", "health_plus", "dental_care", "vision_first", "family_shield"}
    assert all(p.mock_mode for p in registry.all())
    assert [p.id for p in registry.eligible("life")] == ["jas_assure", "life_secure", "family_shield"]


def test_catalogue_key_from_environment_disables_mock(monkeypatch, no_carrier_keys) -> None:
    monkeypatch.setenv("DENTALCARE_API_KEY", "dc-key")

    registry = ProviderRegistry(default_provider_catalogue())

    dental = registry.get("dental_care")
    assert dental.mock_mode is False
    assert dental.api_key == "dc-key"
    assert dental.public_dict()["api_key"] == "***"


def test_eligible_orders_by_priority_then_id() -> None:
    registry = ProviderRegistry(
        [
            make_provider("zulu", priority=2),
            make_provider("alpha", priority=2),
            make_provider("mike", priority=1),
            make_provider("off", priority=1, is_active=False),
            make_provider("teeth", supported_coverage_types=["dental"]),
        ]
    )

    assert [p.id for p in registry.eligible("life")] == ["mike", "alpha", "zulu"]
    assert [p.id for p in registry.eligible("dental")] == ["teeth"]
    assert [p.id for p in registry.active()] == ["mike", "alpha", "zulu", "teeth"]


def test_snapshot_is_isolated_from_updates() -> None:
    registry = ProviderRegistry([make_provider("alpha", timeout=2000)])

    snapshot = registry.snapshot("life")
    registry.update("alpha", {"timeout": 500, "is_active": False})

    assert snapshot[0].timeout == 2000
    assert snapshot[0].is_active is True
    assert registry.snapshot("life") == ()


def test_update_merges_nested_settings_and_reconfigures_limiter() -> None:
    registry = ProviderRegistry([make_provider("alpha")])
    limiter = registry.limiter("alpha")

    updated = registry.update("alpha", {"rate_limit": {"burst_limit": 5}, "retry_config": {"max_retries": 2}})

    assert updated.rate_limit.burst_limit == 5
    assert updated.rate_limit.requests_per_second == 100
    assert updated.retry_config.max_retries == 2
    assert updated.retry_config.initial_delay == 10
    assert registry.limiter("alpha") is limiter
    assert limiter.burst_limit == 5


@pytest.mark.parametrize(
    "changes",
    [
        {"timeout": 0},
        {"base_url": "ftp://example.com"},
        {"rate_limit": {"requests_per_second": 0}},
        {"retry_config": {"backoff_multiplier": 0.5}},
        {"priority": 0},
        {"id": "renamed"},
    ],
)
def test_update_rejects_invalid_changes(changes) -> None:
    registry = ProviderRegistry([make_provider("alpha")])

    with pytest.raises(QuoteValidationError):
        registry.update("alpha", changes)

    assert registry.get("alpha").timeout == 2000


def test_setting_api_key_leaves_mock_mode() -> None:
    registry = ProviderRegistry([make_provider("alpha")])
    assert registry.get("alpha").mock_mode is True

    assert registry.update("alpha", {"api_key": "live"}).mock_mode is False


def test_unknown_provider() -> None:
    registry = ProviderRegistry([make_provider("alpha")])

    with pytest.raises(ProviderNotFound):
        registry.get("nope")
    with pytest.raises(ProviderNotFound):
        registry.update("nope", {"timeout": 100})
    with pytest.raises(ProviderNotFound):
        registry.limiter("nope")


def test_upsert_creates_provider_with_limiter() -> None:
    registry = ProviderRegistry([])

    created = registry.upsert(make_provider("new_co", supported_coverage_types=["Dental"]))

    assert created.supported_coverage_types == ["dental"]
    assert registry.limiter("new_co").burst_limit == 100
    assert "dental" in registry.coverage_types()


def test_duplicate_ids_rejected() -> None:
    with pytest.raises(ConfigError):
        ProviderRegistry([make_provider("alpha"), make_provider("alpha")])


@pytest.mark.parametrize("label", ["Term Life", "term-life", "term_life", "Whole Life"])
def test_life_variants_select_the_life_providers(label, criteria) -> None:
    registry = ProviderRegistry(
        [
            make_provider("alpha", supported_coverage_types=["life"]),
            make_provider("bravo", supported_coverage_types=["life", "term_life"]),
            make_provider("teeth", supported_coverage_types=["dental"]),
        ]
    )
    criteria["coverage_type"] = label

    parsed = parse_criteria(criteria, registry.coverage_types())

    assert parsed.coverage_type == "life"
    assert [p.id for p in registry.eligible(parsed.coverage_type)] == ["alpha", "bravo"]
