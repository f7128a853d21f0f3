# backend/app/core/metrics.py

from prometheus_client import Counter, Gauge
import logging

logger = logging.getLogger(__name__)

# Room Metrics
ROOMS_CREATED = Counter(
    "nebulachat_rooms_created_total",
    "Total number of rooms created"
)

ROOMS_DELETED = Counter(
    "nebulachat_rooms_deleted_total",
    "Total number of rooms deleted"
)

ROOM_JOINS = Counter(
    "nebulachat_room_joins_total",
    "Room join attempts by outcome",
    ["result"]  # result: joined, rejoined, rejected, full
)

ROOM_ID_COLLISIONS = Counter(
    "nebulachat_room_id_collisions_total",
    "Room id/secret collisions that forced regeneration"
)

# Message Metrics
MESSAGES_SENT = Counter(
    "nebulachat_messages_sent_total",
    "Total number of messages sent",
    ["kind"]  # kind: text, reply, attachment
)

ATTACHMENTS_UPLOADED = Counter(
    "nebulachat_attachments_uploaded_total",
    "Total number of attachments uploaded"
)

# WebSocket Metrics
WEBSOCKET_CONNECTIONS = Gauge(
    "nebulachat_websocket_connections",
    "Current number of active WebSocket connections"
)

WEBSOCKET_MESSAGES = Counter(
    "nebulachat_websocket_messages_total",
    "Total number of WebSocket frames",
    ["direction", "message_type"]  # direction: in, out
)
