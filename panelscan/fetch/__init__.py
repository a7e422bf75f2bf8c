"""Upstream fetching."""

from panelscan.fetch.client import ClientPool, fetch_entity, fetch_uid

__all__ = ["ClientPool", "fetch_entity", "fetch_uid"]
