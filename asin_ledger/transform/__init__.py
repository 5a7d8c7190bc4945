"""
Transform layer — pure functions from raw payloads to a canonical snapshot.

Modules:
  stats        — vendor price-series decoding, percentiles, volatility
  flatten      — one flattener per source, full-schema output
  merge        — declarative per-field source precedence
  derived      — cross-source fields (days of cover, stock/buy-box flags)
  fingerprint  — curated-field SHA-256 for change detection
  quality      — composable data-quality rules and the checker

Nothing here touches the database or the network.
"""
