from __future__ import annotations

from agriqcert.core.config import get_settings
from agriqcert.core.errors import ProviderConfigError
from agriqcert.providers.trust.base import PROVIDER_MODE_LIVE, PROVIDER_MODE_MOCK, TrustProvider
from agriqcert.providers.trust.inji import InjiTrustProvider
from agriqcert.providers.trust.mock import MockTrustProvider


def get_trust_provider() -> TrustProvider:
    settings = get_settings()
    provider = (settings.trust_provider or PROVIDER_MODE_MOCK).strip().lower()

    if provider == PROVIDER_MODE_MOCK:
        return MockTrustProvider()
    if provider in {PROVIDER_MODE_LIVE, "inji"}:
        # InjiTrustProvider raises ProviderConfigError when URL or key is missing.
        return InjiTrustProvider()

    raise ProviderConfigError(f"Unsupported trust provider: {provider}")
