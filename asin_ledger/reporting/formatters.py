"""
Plain-text formatters for the CLI reporting commands.

All formatters take models from ``reporting.reader`` and return multi-line
strings suitable for ``typer.echo()``. Unknown values print as ``-`` so a
missing field is never confused with zero.

No third-party dependencies (no ``rich``, no ``colorama``).
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from asin_ledger.models.quality import DQIssue
from asin_ledger.models.snapshot import CurrentView, MergedSnapshot


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M UTC")
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


def format_current_view(view: CurrentView) -> str:
    """Key/value block for one identifier's current state."""
    rows = [
        ("ASIN", view.asin),
        ("Marketplace", view.marketplace_id),
        ("Title", view.title),
        ("Brand", view.brand),
        ("Price (inc VAT)", view.price_inc_vat),
        ("Buy box price", view.buy_box_price),
        ("Buy box lost", view.is_buy_box_lost),
        ("Sellers", view.seller_count),
        ("Stock", view.total_stock),
        ("Out of stock", view.is_out_of_stock),
        ("Days of cover", view.days_of_cover),
        ("Sales rank", view.keepa_sales_rank_latest),
        ("Median 90d", view.keepa_price_median_90d),
        ("Volatility 90d", view.keepa_price_volatility_90d),
        ("Snapshot", f"#{view.latest_snapshot_id} at {_fmt(view.last_snapshot_time)}"),
        ("First seen", view.first_seen_at),
    ]
    width = max(len(label) for label, _ in rows)
    return "\n".join(f"  {label:<{width}}  {_fmt(value)}" for label, value in rows)


def format_history_table(snapshots: Sequence[MergedSnapshot]) -> str:
    """One line per snapshot, newest first."""
    header = (
        f"  {'ID':>6}  {'Snapshot time':<20}  {'Price':>8}  {'BuyBox':>8}  "
        f"{'Stock':>6}  {'Sellers':>7}  Fingerprint"
    )
    lines = [header, "  " + "-" * (len(header) - 2)]
    for snap in snapshots:
        lines.append(
            f"  {_fmt(snap.snapshot_id):>6}  {_fmt(snap.snapshot_time):<20}  "
            f"{_fmt(snap.price_inc_vat):>8}  {_fmt(snap.buy_box_price):>8}  "
            f"{_fmt(snap.total_stock):>6}  {_fmt(snap.seller_count):>7}  "
            f"{snap.fingerprint_hash[:12]}"
        )
    return "\n".join(lines)


def format_dq_issues(issues: Sequence[DQIssue]) -> str:
    """One line per issue: severity, type, field, message."""
    lines = []
    for issue in issues:
        lines.append(
            f"  [{issue.severity}] {issue.issue_type:<17} {issue.field_name or '-':<28} "
            f"{issue.message}"
        )
    return "\n".join(lines)
