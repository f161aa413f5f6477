from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.core.config import Settings, get_settings
from agriqcert.persistence.db import SessionLocal
from agriqcert.providers.trust.base import TrustProvider
from agriqcert.providers.trust.factory import get_trust_provider
from agriqcert.services.issuance import IssuanceService
from agriqcert.services.notifications import DatabaseNotifier, NotificationPort
from agriqcert.services.revocation import RevocationService
from agriqcert.services.verification import VerificationEngine
from agriqcert.services.webhooks import WebhookIngress


@dataclass
class ServiceContainer:
    settings: Settings
    provider: TrustProvider
    notifier: NotificationPort
    issuance: IssuanceService
    verification: VerificationEngine
    revocation: RevocationService
    webhooks: WebhookIngress


def build_container(
    *,
    settings: Settings | None = None,
    provider: TrustProvider | None = None,
    notifier: NotificationPort | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
) -> ServiceContainer:
    # Wire every service once from settings; API and worker share the same shape.
    resolved_settings = settings or get_settings()
    resolved_provider = provider or get_trust_provider()
    resolved_factory = session_factory or SessionLocal
    resolved_notifier = notifier or DatabaseNotifier(resolved_factory)
    return ServiceContainer(
        settings=resolved_settings,
        provider=resolved_provider,
        notifier=resolved_notifier,
        issuance=IssuanceService(
            resolved_provider,
            notifier=resolved_notifier,
            session_factory=resolved_factory,
            settings=resolved_settings,
        ),
        verification=VerificationEngine(
            resolved_provider,
            session_factory=resolved_factory,
            settings=resolved_settings,
        ),
        revocation=RevocationService(notifier=resolved_notifier, session_factory=resolved_factory),
        webhooks=WebhookIngress(resolved_provider, session_factory=resolved_factory),
    )
