"""Abstract base class for per-domain adapters.

Each adapter owns everything the scanner needs to know about one domain:
where a UID's data lives upstream, which UIDs are well-formed, and how to
turn a payload into per-entity sample records.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class DomainAdapter(ABC):
    """Base adapter that every domain implements.

    Subclasses MUST set ``domain`` and ``endpoint`` as class attributes and
    implement ``extract_records``.
    """

    domain: str
    endpoint: str
    fallback_base_url: str | None = None

    def __init__(self, base_url: str = "https://enka.network/") -> None:
        self.base_url = base_url.rstrip("/") + "/"

    def build_url(self, uid: int) -> str:
        return f"{self.base_url}{self.endpoint.format(uid=uid)}"

    def fallback_urls(self, uid: int) -> list[str]:
        """Alternate URLs to try after a transport failure on the primary."""
        if not self.fallback_base_url:
            return []
        return [f"{self.fallback_base_url.rstrip('/')}/{self.endpoint.format(uid=uid)}"]

    def validate_uid(self, uid: int) -> bool:
        return uid > 0

    @abstractmethod
    def extract_records(self, payload: dict) -> list[dict]:
        """Extract sample records from an upstream payload.

        Every record MUST carry an ``entity_id`` key. Entities without a
        complete build are skipped.
        """
        ...
