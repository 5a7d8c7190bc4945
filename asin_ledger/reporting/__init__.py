"""
asin_ledger.reporting — Read-only access to the ledger for downstream consumers.

Nothing in this package writes; every function takes an open connection and
returns models (or plain dicts) from the persisted tables.

Modules:
  reader     — current state, snapshot history, stale identifiers, open DQ
               issues, job summaries.
  formatters — plain-text renderers for the Typer CLI.
"""
