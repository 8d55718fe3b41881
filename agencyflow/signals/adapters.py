"""Per-source adapters turning raw integration data into signal fields."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..contracts import SignalSource, SignalUrgency
from ..exceptions import SignalValidationError
from ..rules.metrics import to_number


@dataclass
class AdaptedSignal:
    type: str
    urgency: SignalUrgency
    payload: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _has_any(data: Dict[str, Any], *keys: str) -> bool:
    return any(key in data for key in keys)


def _by_magnitude(
    value: Any, critical: float, high: float, normal: Optional[float], fallback: SignalUrgency
) -> SignalUrgency:
    number = to_number(value)
    if number is None:
        return fallback
    if abs(number) > critical:
        return SignalUrgency.CRITICAL
    if abs(number) > high:
        return SignalUrgency.HIGH
    if normal is not None and abs(number) > normal:
        return SignalUrgency.NORMAL
    return fallback


def _envelope_urgency(value: Any) -> SignalUrgency:
    if value is None:
        return SignalUrgency.NORMAL
    try:
        return SignalUrgency(str(value).lower())
    except ValueError as exc:
        raise SignalValidationError(f"Invalid urgency: {value}") from exc


class SignalAdapter:
    source: SignalSource

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        raise NotImplementedError


class GA4Adapter(SignalAdapter):
    """Web analytics metrics; urgency follows the size of the percent change."""

    source = SignalSource.GA4

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        if raw_data.get("event_type") or raw_data.get("eventType"):
            signal_type = str(_first(raw_data, "event_type", "eventType"))
        elif _has_any(raw_data, "sessions", "users"):
            signal_type = "traffic_metrics"
        elif "conversions" in raw_data:
            signal_type = "conversion_metrics"
        elif _has_any(raw_data, "page_views", "pageViews"):
            signal_type = "pageview_metrics"
        else:
            signal_type = "general_metrics"
        urgency = _by_magnitude(
            _first(raw_data, "percent_change", "percentChange"),
            50,
            25,
            10,
            SignalUrgency.LOW,
        )
        return AdaptedSignal(
            type=signal_type,
            urgency=urgency,
            payload=raw_data,
            metadata={
                "adapter": self.source.value,
                "property_id": _first(raw_data, "property_id", "propertyId"),
            },
        )


class GSCAdapter(SignalAdapter):
    """Search analytics; urgency follows the ranking position change."""

    source = SignalSource.GSC

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        if "position" in raw_data:
            signal_type = "ranking_change"
        elif _has_any(raw_data, "clicks", "impressions"):
            signal_type = "search_performance"
        elif "query" in raw_data:
            signal_type = "query_metrics"
        else:
            signal_type = "general_search"
        urgency = _by_magnitude(
            _first(raw_data, "position_change", "positionChange"),
            10,
            5,
            2,
            SignalUrgency.LOW,
        )
        return AdaptedSignal(
            type=signal_type,
            urgency=urgency,
            payload=raw_data,
            metadata={
                "adapter": self.source.value,
                "site_url": _first(raw_data, "site_url", "siteUrl"),
            },
        )


class HubSpotAdapter(SignalAdapter):
    """CRM webhooks keyed by subscription type."""

    source = SignalSource.HUBSPOT

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        subscription = str(
            _first(raw_data, "subscription_type", "subscriptionType") or ""
        ).lower()
        if "deal" in subscription:
            signal_type = "deal_update"
        elif "contact" in subscription:
            signal_type = "contact_update"
        elif "company" in subscription:
            signal_type = "company_update"
        elif "form" in subscription:
            signal_type = "form_submission"
        else:
            signal_type = "general_crm"

        if any(
            marker in subscription
            for marker in ("deal.creation", "deal.propertychange", "form.submission")
        ):
            urgency = SignalUrgency.HIGH
        else:
            urgency = SignalUrgency.NORMAL
        return AdaptedSignal(
            type=signal_type,
            urgency=urgency,
            payload=raw_data,
            metadata={
                "adapter": self.source.value,
                "portal_id": _first(raw_data, "portal_id", "portalId"),
                "event_type": subscription or None,
            },
        )


class LinkedInAdapter(SignalAdapter):
    source = SignalSource.LINKEDIN

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        if _has_any(raw_data, "engagement_rate", "engagementRate"):
            signal_type = "engagement_metrics"
        elif "followers" in raw_data:
            signal_type = "follower_metrics"
        elif "impressions" in raw_data:
            signal_type = "reach_metrics"
        else:
            signal_type = "general_social"
        urgency = _by_magnitude(
            _first(raw_data, "engagement_change", "engagementChange"),
            30,
            15,
            None,
            SignalUrgency.NORMAL,
        )
        return AdaptedSignal(
            type=signal_type,
            urgency=urgency,
            payload=raw_data,
            metadata={
                "adapter": self.source.value,
                "organization_id": _first(raw_data, "organization_id", "organizationId"),
            },
        )


class InternalAdapter(SignalAdapter):
    """Envelopes produced by the platform itself: ``{type, urgency, data}``."""

    source = SignalSource.INTERNAL
    default_type = "internal_event"
    payload_key = "data"

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        signal_type = raw_data.get("type") or self.default_type
        payload = raw_data.get(self.payload_key)
        if not isinstance(payload, dict):
            payload = raw_data
        metadata = {"adapter": self.source.value}
        if isinstance(raw_data.get("metadata"), dict):
            metadata.update(raw_data["metadata"])
        return AdaptedSignal(
            type=str(signal_type),
            urgency=_envelope_urgency(raw_data.get("urgency")),
            payload=payload,
            metadata=metadata,
        )


class WebhookAdapter(InternalAdapter):
    """Generic inbound webhooks: ``{type|event, urgency, payload}``."""

    source = SignalSource.WEBHOOK
    default_type = "webhook_event"
    payload_key = "payload"

    def adapt(self, raw_data: Dict[str, Any]) -> AdaptedSignal:
        if not raw_data.get("type") and raw_data.get("event"):
            raw_data = {**raw_data, "type": raw_data["event"]}
        adapted = super().adapt(raw_data)
        adapted.metadata.setdefault(
            "webhook_id", _first(raw_data, "webhook_id", "webhookId")
        )
        return adapted


ADAPTERS: Dict[str, SignalAdapter] = {
    adapter.source.value: adapter
    for adapter in (
        GA4Adapter(),
        GSCAdapter(),
        HubSpotAdapter(),
        LinkedInAdapter(),
        InternalAdapter(),
        WebhookAdapter(),
    )
}


def get_adapter(source: str) -> SignalAdapter:
    adapter = ADAPTERS.get(str(source).lower())
    if adapter is None:
        raise SignalValidationError(
            f"No adapter found for source: {source}",
            details={"supported": sorted(ADAPTERS)},
        )
    return adapter


def register_adapter(adapter: SignalAdapter) -> None:
    ADAPTERS[adapter.source.value] = adapter


__all__ = [
    "ADAPTERS",
    "AdaptedSignal",
    "SignalAdapter",
    "GA4Adapter",
    "GSCAdapter",
    "HubSpotAdapter",
    "LinkedInAdapter",
    "InternalAdapter",
    "WebhookAdapter",
    "get_adapter",
    "register_adapter",
]
