"""
Test Utilities and Fixtures
"""

import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from quotehub.core.config import Config, get_config
from quotehub.modules.quote.audit import AuditRecorder
from quotehub.modules.quote.orchestrator import Orchestrator
from quotehub.modules.quote.registry import ProviderRegistry

CARRIER_KEY_ENV = (
    "JASASSURE_API_KEY",
    "LIFESECURE_API_KEY",
    "HEALTHPLUS_API_KEY",
    "DENTALCARE_API_KEY",
    "VISIONFIRST_API_KEY",
    "FAMILYSHIELD_API_KEY",
)


@pytest.fixture
def temp_dir():
    """Temporary directory"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_file(temp_dir):
    """Temporary configuration file"""
    config_file = temp_dir / "config.yaml"
    config_content = f"""
app:
  name: "quotehub"
  version: "1.0.0"
  debug: true
  log_level: "DEBUG"

database:
  type: "sqlite"
  path: "{(temp_dir / 'quotehub.db').as_posix()}"
  timeout: 30

engine:
  max_request_seconds: 5

providers:
  - id: "life_secure"
    display_name: "LifeSecure Insurance"
    base_url: "https://api.lifesecure.test/v1"
    api_key: "${{TEST_LIFESECURE_KEY}}"
    auth_header: "X-API-Key"
    adapter: "life_secure"
    supported_coverage_types: ["life"]
    priority: 1
  - id: "dental_care"
    display_name: "DentalCare Pro"
    base_url: "https://api.dentalcare.test/v2"
    supported_coverage_types: ["dental"]
    priority: 3
"""
    config_file.write_text(config_content)
    return config_file


@pytest.fixture
def config(temp_config_file, monkeypatch):
    """Config singleton bound to the temporary file"""
    monkeypatch.setenv("TEST_LIFESECURE_KEY", "ls-secret")
    Config._instance = None
    get_config.cache_clear()
    config = Config(str(temp_config_file))
    yield config
    Config._instance = None
    get_config.cache_clear()


@pytest.fixture
def no_carrier_keys(monkeypatch):
    """Built-in carriers without credentials (all mock mode)"""
    for name in CARRIER_KEY_ENV:
        monkeypatch.delenv(name, raising=False)


def make_provider(provider_id: str, **overrides: Any) -> dict[str, Any]:
    """Provider config dict with fast retry settings"""
    data: dict[str, Any] = {
        "id": provider_id,
        "display_name": provider_id.replace("_", " ").title(),
        "base_url": f"https://{provider_id.replace('_', '-')}.test/api",
        "supported_coverage_types": ["life"],
        "priority": 10,
        "timeout": 2000,
        "rate_limit": {"requests_per_second": 100, "burst_limit": 100},
        "retry_config": {"max_retries": 0, "backoff_multiplier": 2, "initial_delay": 10},
    }
    data.update(overrides)
    return data


@pytest.fixture
def provider_factory() -> Callable[..., dict[str, Any]]:
    return make_provider


@pytest.fixture
def criteria() -> dict[str, Any]:
    """Valid life insurance criteria"""
    return {
        "coverage_type": "life",
        "coverage_amount": 250000,
        "applicant_age": 35,
        "zip_code": "33073",
        "state": "FL",
        "term_length": 20,
    }


@pytest.fixture
def audit(temp_dir) -> AuditRecorder:
    return AuditRecorder(str(temp_dir / "audit.db"))


@pytest.fixture
def build_orchestrator(audit):
    """Factory: orchestrator over given providers and an httpx handler"""
    created: list[Orchestrator] = []

    def _build(
        providers: list[dict[str, Any]],
        handler: Optional[Callable] = None,
        **engine: Any,
    ) -> Orchestrator:
        def _unexpected(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"unexpected outbound call: {request.url}")

        transport = httpx.MockTransport(handler or _unexpected)
        orchestrator = Orchestrator(ProviderRegistry(providers), audit, engine or None, transport=transport)
        created.append(orchestrator)
        return orchestrator

    return _build
