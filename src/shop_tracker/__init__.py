"""
shop-tracker: Daily item shop tracker.

A background service that fetches the daily item shop from an unreliable
upstream API, caches it with stale-on-failure fallback, and notifies users
when items on their wishlists show up in the shop.
"""

__version__ = "0.1.0"
