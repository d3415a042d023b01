"""
Repository wiring.

`build_repositories()` picks the in-memory or SQLAlchemy implementations from
the configured integration mode.
"""

from dataclasses import dataclass
from typing import Optional

from auditoria.core.config import AuditSettings, get_audit_settings
from auditoria.repositories.base import (
    AuthorizationRepository,
    RadicadoRepository,
    ReferenceDataRepository,
    RuleRepository,
)


@dataclass
class Repositories:
    """Repository set used by the services."""

    reference: ReferenceDataRepository
    radicados: RadicadoRepository
    authorizations: AuthorizationRepository
    rules: RuleRepository


def build_repositories(settings: Optional[AuditSettings] = None) -> Repositories:
    """Create repositories for the configured integration mode."""
    settings = settings or get_audit_settings()

    if settings.is_live_mode:
        from auditoria.db.connection import get_session_maker
        from auditoria.repositories.sql import (
            SqlAuthorizationRepository,
            SqlRadicadoRepository,
            SqlReferenceDataRepository,
            SqlRuleRepository,
        )

        session_maker = get_session_maker(settings)
        return Repositories(
            reference=SqlReferenceDataRepository(session_maker),
            radicados=SqlRadicadoRepository(session_maker),
            authorizations=SqlAuthorizationRepository(session_maker),
            rules=SqlRuleRepository(session_maker),
        )

    from auditoria.db import seeds
    from auditoria.repositories.memory import (
        InMemoryAuthorizationRepository,
        InMemoryRadicadoRepository,
        InMemoryReferenceDataRepository,
        InMemoryRuleRepository,
    )

    return Repositories(
        reference=InMemoryReferenceDataRepository().load(
            tariffs=seeds.tariff_catalog(),
            contracts=seeds.contracts(),
            moderating_fees=seeds.moderating_fees(),
            habilitations=seeds.habilitations(),
            clinical_compatibility=seeds.clinical_compatibility(),
        ),
        radicados=InMemoryRadicadoRepository(),
        authorizations=InMemoryAuthorizationRepository().load(seeds.demo_authorizations()),
        rules=InMemoryRuleRepository(),
    )


# Singleton instance
_repositories: Optional[Repositories] = None


def get_repositories() -> Repositories:
    """Get or create the repository set shared by the services."""
    global _repositories
    if _repositories is None:
        _repositories = build_repositories()
    return _repositories


def reset_repositories() -> None:
    """Drop the shared repository set (for testing)."""
    global _repositories
    _repositories = None


__all__ = [
    "AuthorizationRepository",
    "RadicadoRepository",
    "ReferenceDataRepository",
    "Repositories",
    "RuleRepository",
    "build_repositories",
    "get_repositories",
    "reset_repositories",
]
