"""
Partner Factory

PARTNER_MODE selects the partner implementation:
- "http": PartnerHttpClient against PARTNER_BASE_URL
- "fake": FakePartnerApi (development, load tests)
"""

from src.core.config.settings import get_settings
from src.core.exceptions import ConfigurationError
from src.core.interfaces.collaborators import PartnerApi
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector
from src.infrastructure.partner.fake_partner import FakePartnerApi
from src.infrastructure.partner.partner_client import PartnerHttpClient


def create_partner_api(settings=None) -> PartnerApi:
    """
    Raises:
        ConfigurationError: If http mode is selected without an API key
    """
    settings = settings or get_settings()
    section = settings.partner

    if section.PARTNER_MODE == "fake":
        return FakePartnerApi(latency_seconds=section.FAKE_PARTNER_LATENCY_SECONDS)

    if not section.PARTNER_API_KEY:
        raise ConfigurationError("PARTNER_API_KEY is required when PARTNER_MODE=http")

    return PartnerHttpClient(
        base_url=section.PARTNER_BASE_URL,
        api_key=section.PARTNER_API_KEY,
        timeout=section.PARTNER_TIMEOUT,
        max_retries=section.PARTNER_MAX_RETRIES,
        retry_base_delay=section.PARTNER_RETRY_BASE_DELAY,
        retry_max_delay=section.PARTNER_RETRY_MAX_DELAY,
        metrics=get_metrics_collector(),
    )
