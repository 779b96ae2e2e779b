# app/client/__init__.py
"""Client-side helpers of the storefront (payment watcher)."""

from app.client.watcher import PaymentWatcher, StorefrontClient, WatchOutcome, WatchResult

__all__ = ["PaymentWatcher", "StorefrontClient", "WatchOutcome", "WatchResult"]
