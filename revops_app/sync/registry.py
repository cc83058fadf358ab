"""
Sync source registry.

Sources register metadata here so configuration validation can occur without
constructing adapters or touching credentials.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata describing a sync source."""

    name: str
    title: str
    required_config: Tuple[str, ...] = ()
    has_adapter: bool = True
    summary: str | None = None


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    """Return the registry of known sync sources, in display order."""
    return OrderedDict(
        (
            (
                "ghl",
                SourceDescriptor(
                    name="ghl",
                    title="GoHighLevel Contacts",
                    required_config=("GHL_API_KEY", "GHL_LOCATION_ID"),
                    summary="Contacts CRM; offset pagination.",
                ),
            ),
            (
                "manychat",
                SourceDescriptor(
                    name="manychat",
                    title="ManyChat Subscribers",
                    required_config=("MANYCHAT_API_KEY",),
                    summary="Chat subscribers; page-number pagination.",
                ),
            ),
            (
                "stripe",
                SourceDescriptor(
                    name="stripe",
                    title="Stripe Payment Intents",
                    required_config=("STRIPE_SECRET_KEY",),
                    summary="Payment processor A; opaque cursor pagination.",
                ),
            ),
            (
                "paypal",
                SourceDescriptor(
                    name="paypal",
                    title="PayPal Transactions",
                    required_config=("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"),
                    summary="Payment processor B; page-number pagination inside a date window.",
                ),
            ),
            (
                "invoices",
                SourceDescriptor(name="invoices", title="Invoices", has_adapter=False),
            ),
            (
                "dunning",
                SourceDescriptor(name="dunning", title="Dunning", has_adapter=False),
            ),
            (
                "smart_recovery",
                SourceDescriptor(
                    name="smart_recovery",
                    title="Payment Recovery",
                    required_config=("STRIPE_SECRET_KEY",),
                    has_adapter=False,
                    summary="Batch retry of open invoices; driven by the recovery processor.",
                ),
            ),
        )
    )


def resolve_sources(
    configured: Sequence[str],
    registry: Mapping[str, SourceDescriptor] | None = None,
) -> Iterable[SourceDescriptor]:
    """Map configured source names to registry descriptors, raising on unknowns."""
    registry = registry or get_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown sync sources configured: " + ", ".join(unknown) + ". Update SYNC_SOURCES or register them first."
        )
    return tuple(registry[source] for source in configured)


def missing_config(descriptor: SourceDescriptor, config: Mapping[str, object]) -> Tuple[str, ...]:
    """Return the required config keys that are unset for ``descriptor``."""
    return tuple(key for key in descriptor.required_config if not config.get(key))
