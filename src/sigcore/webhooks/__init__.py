"""
Inbound provider webhooks: rate limiting, signature checks, idempotency, ingestion.
"""
