"""
channels — Push transports for the realtime channel.

Each transport exposes:
    push(recipient_id, message_id, content) → number of channels reached

Transports are fire-and-forget: reaching a channel is not a delivery
receipt. Only an explicit acknowledgment ends retries.
"""
