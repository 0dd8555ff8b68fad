"""Registry of providers by the step type they execute."""

from fleet_provisioning.providers import base
from fleet_provisioning.providers import common
from fleet_provisioning.providers import tip_cleanup
from fleet_provisioning.providers import tip_creation
from fleet_provisioning.providers import tip_state

PROVIDERS: dict[str, type[base.ExperimentProvider]] = {
    p.step_type: p
    for p in (
        tip_creation.TipCreationProvider,
        tip_cleanup.TipCleanupProvider,
        tip_state.TipStateProvider,
    )
}


def get_provider_class(step_type: str) -> type[base.ExperimentProvider]:
    """Return provider class for the step type, matched case-insensitively."""
    lstep_type = step_type.lower()
    for name, provider_cls in PROVIDERS.items():
        if name.lower() == lstep_type:
            return provider_cls

    msg = f"Unknown step type '{step_type}', supported types: {', '.join(PROVIDERS)}"
    raise common.SchemaError(msg)


def create_provider(step_type: str, services: base.ProviderServices) -> base.ExperimentProvider:
    """Create provider for the step type."""
    return get_provider_class(step_type)(services)
