"""Operational counters for the conversation core."""

from prometheus_client import CollectorRegistry, Counter, generate_latest

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

CONVERSATIONS_CREATED = Counter(
    "chat_conversations_created_total",
    "Conversations created by the resolver",
    registry=CUSTOM_REGISTRY,
)
CREATION_CONFLICTS = Counter(
    "chat_creation_conflicts_total",
    "Create calls answered with an existing conversation",
    registry=CUSTOM_REGISTRY,
)
SYNC_TICKS = Counter(
    "chat_sync_ticks_total",
    "Message poll ticks executed",
    registry=CUSTOM_REGISTRY,
)
SYNC_FAILURES = Counter(
    "chat_sync_failures_total",
    "Message poll ticks that failed",
    registry=CUSTOM_REGISTRY,
)
MESSAGES_SENT = Counter(
    "chat_messages_sent_total",
    "Messages confirmed by the server",
    registry=CUSTOM_REGISTRY,
)
SEND_FAILURES = Counter(
    "chat_send_failures_total",
    "Messages that failed to reach the server",
    registry=CUSTOM_REGISTRY,
)


def render_metrics() -> bytes:
    """Render the registry in the Prometheus text format."""
    return generate_latest(CUSTOM_REGISTRY)
