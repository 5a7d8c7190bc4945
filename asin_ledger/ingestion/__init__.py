"""
Ingestion layer — vendor client, quota control, cache, and source boundaries.

Submodules:
  errors          — exception taxonomy shared by ingestion and persistence
  rate_limiter    — quota tracking, backoff with jitter, keyed locks
  market_client   — batched, retrying market-data vendor client (httpx)
  snapshot_cache  — TTL freshness check over persisted snapshots
  first_party     — first-party data source protocol and implementations

Credential placement (.env, gitignored):
  KEEPA_API_KEY     — market-data vendor API key
"""
