"""
delivery — Reliable push delivery of short notifications.

Sub-modules:
    models           — Message, states, expiry rule, sweep report
    store / sql_store — Message Store (in-memory and SQLAlchemy)
    presence         — which recipients hold an open channel
    channels/        — push transports (WebSocket)
    dispatcher       — push now or queue
    acknowledgment   — idempotent acknowledgment
    retry_scheduler  — periodic re-push and expiry sweep
    service / actors — local and actor-backed message service
    hub              — channel connect / disconnect / ack events
    runtime          — composition of the above
"""
