"""Gateway adapters: outbound WhatsApp sender, conversation engine, inbound webhook."""
from channels.sender import (
    MessageSender,
    TokenBucketRateLimiter,
    CircuitBreaker,
    SenderMetrics,
)
from channels.zapi_sender import ZApiSender
from channels.conversation_engine import ConversationEngineClient
from channels.webhook import WebhookReceiver, WebhookAck

__all__ = [
    "MessageSender", "TokenBucketRateLimiter", "CircuitBreaker", "SenderMetrics",
    "ZApiSender", "ConversationEngineClient", "WebhookReceiver", "WebhookAck",
]
