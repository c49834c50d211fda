import logging
import threading
from typing import FrozenSet, Iterable, Iterator, Optional


logger = logging.getLogger("sinkholed.blocklist")


def _clean(domains: Iterable[str]) -> FrozenSet[str]:
    cleaned = set()
    for d in domains:
        if d is None:
            continue
        d = d.strip()
        if not d or d.startswith('#'):
            continue
        cleaned.add(d)
    return frozenset(cleaned)


class Blocklist:
    """Shared set of blocked domain names.

    Lookups read the current frozenset snapshot without locking. Every
    mutation builds a new snapshot under a lock and swaps the reference, so a
    lookup running concurrently with an update sees either the old or the new
    list and never a half-modified one.

    Matching is exact and case-sensitive: "Ads.example.com" does not match an
    "ads.example.com" entry.
    """

    def __init__(self, domains: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._domains = _clean(domains)

    def is_blocked(self, qname: Optional[str]) -> bool:
        if not qname:
            return False
        return qname in self._domains

    def snapshot(self) -> FrozenSet[str]:
        return self._domains

    def add(self, domain: str) -> bool:
        """Add a domain. Returns False if it was already present or blank."""
        new = _clean([domain])
        if not new:
            return False
        with self._lock:
            if new <= self._domains:
                return False
            self._domains = self._domains | new
        logger.debug("blocklist add %s", domain.strip())
        return True

    def discard(self, domain: str) -> bool:
        """Remove a domain. Returns False if it was not present."""
        d = (domain or '').strip()
        with self._lock:
            if d not in self._domains:
                return False
            self._domains = self._domains - {d}
        logger.debug("blocklist remove %s", d)
        return True

    def replace(self, domains: Iterable[str]) -> None:
        new = _clean(domains)
        with self._lock:
            self._domains = new
        logger.info("blocklist replaced: %d entries", len(new))

    def __contains__(self, qname) -> bool:
        return self.is_blocked(qname)

    def __len__(self) -> int:
        return len(self._domains)

    def __iter__(self) -> Iterator[str]:
        return iter(self._domains)
