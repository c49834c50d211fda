import asyncio
import logging
import time
from typing import Any, List, Optional, Tuple

import aiohttp
from cachetools import TTLCache

from sinkholed.core.wire import TYPE_A


DEFAULT_DOH_ENDPOINT = 'https://cloudflare-dns.com/dns-query'
DOH_HEADERS = {'Accept': 'application/dns-json'}


def parse_doh_answer(body: Any) -> Tuple[List[str], Optional[int]]:
    """Extract A record data from a DoH JSON body.

    Returns (addresses, min_ttl); min_ttl is None when no kept entry carries a
    TTL. Anything that does not look like
    {"Status": .., "Answer": [{"name", "type", "TTL", "data"}, ...]} yields
    ([], None). Entries of other types (CNAME targets and so on) are skipped;
    entries without a "type" field are kept.
    """
    if not isinstance(body, dict):
        return [], None
    answers = body.get('Answer')
    if not isinstance(answers, list):
        return [], None
    addresses = []
    ttls = []
    for entry in answers:
        if not isinstance(entry, dict) or 'data' not in entry:
            continue
        if entry.get('type', TYPE_A) != TYPE_A:
            continue
        addresses.append(str(entry['data']))
        ttl = entry.get('TTL')
        if isinstance(ttl, int) and ttl >= 0:
            ttls.append(ttl)
    return addresses, (min(ttls) if ttls else None)


class DoHResolver:
    """Resolve A records through a DNS-over-HTTPS JSON endpoint.

    resolve() never raises (other than on cancellation): timeouts, HTTP
    errors and unparsable bodies all end up as an empty list. Each attempt is
    bounded by `timeout` seconds and failed attempts are retried up to
    `retries` attempts in total with exponential backoff.

    Non-empty results are kept in a TTL cache for the smallest answer TTL,
    capped at `cache_ttl`. Answers with a TTL of 0 are not cached, answers
    without a TTL are kept for `cache_ttl`. A cache_ttl of 0 disables caching.
    """

    def __init__(self,
                 endpoint: str = DEFAULT_DOH_ENDPOINT,
                 timeout: float = 5.0,
                 retries: int = 2,
                 initial_backoff: float = 0.1,
                 cache_ttl: int = 300,
                 cache_max_size: int = 1024,
                 session: Optional[aiohttp.ClientSession] = None):
        self.endpoint = endpoint
        self.timeout = float(timeout)
        self.retries = max(1, int(retries))
        self.initial_backoff = max(0.0, float(initial_backoff))
        self.cache_ttl = max(0, int(cache_ttl))
        self.logger = logging.getLogger("sinkholed.resolver")

        self._session = session
        self._owns_session = session is None
        if self.cache_ttl > 0:
            self._cache = TTLCache(maxsize=max(1, int(cache_max_size)), ttl=self.cache_ttl)
        else:
            self._cache = None

    # ---------- session ----------
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ---------- cache helpers ----------
    def _cache_get(self, qname: str) -> Optional[List[str]]:
        if self._cache is None:
            return None
        entry = self._cache.get(qname)
        if entry is None:
            self.logger.debug("cache miss for %s", qname)
            return None
        addresses, expiry = entry
        if time.monotonic() >= expiry:
            self._cache.pop(qname, None)
            self.logger.debug("cache expired for %s", qname)
            return None
        self.logger.debug("cache hit for %s -> %s", qname, addresses)
        return list(addresses)

    def _cache_set(self, qname: str, addresses: List[str], ttl: Optional[int]) -> None:
        if self._cache is None or ttl == 0:
            return
        # the cache's own ttl is the upper bound, answer TTLs can only shorten it
        lifetime = self.cache_ttl if ttl is None else min(ttl, self.cache_ttl)
        self._cache[qname] = (tuple(addresses), time.monotonic() + lifetime)
        self.logger.debug("cache set %s -> %s ttl=%s", qname, addresses, lifetime)

    # ---------- upstream ----------
    async def _query(self, qname: str) -> Tuple[List[str], Optional[int]]:
        session = self._get_session()
        params = {'name': qname, 'type': 'A'}
        async with session.get(self.endpoint, params=params, headers=DOH_HEADERS) as resp:
            resp.raise_for_status()
            try:
                body = await resp.json(content_type=None)
            except ValueError as e:
                # a malformed body will not get better on retry
                self.logger.warning("unparsable DoH response for %s: %s", qname, e)
                return [], None
        if isinstance(body, dict) and body.get('Status') not in (None, 0):
            self.logger.debug("DoH status %s for %s", body.get('Status'), qname)
        return parse_doh_answer(body)

    async def _with_retries(self, fn, qname: str):
        """Run fn(qname) with a per-attempt timeout, retries and exponential backoff."""
        backoff = self.initial_backoff
        last_exc = None
        for attempt in range(self.retries):
            try:
                self.logger.debug("attempt %d/%d for %s", attempt + 1, self.retries, qname)
                start = time.monotonic()
                result = await asyncio.wait_for(fn(qname), timeout=self.timeout)
                self.logger.debug("resolved %s on attempt %d (%.3fs)", qname, attempt + 1, time.monotonic() - start)
                return result
            except asyncio.TimeoutError as e:
                last_exc = e
                self.logger.warning("timeout on attempt %d for %s", attempt + 1, qname)
            except (aiohttp.ClientError, OSError) as e:
                last_exc = e
                self.logger.debug("attempt %d failed for %s: %s", attempt + 1, qname, e)
            if attempt + 1 < self.retries:
                self.logger.debug("backing off %.3fs before next attempt", backoff)
                await asyncio.sleep(backoff)
                backoff *= 2
        raise last_exc or RuntimeError("upstream resolution failed")

    async def resolve(self, qname: Optional[str]) -> List[str]:
        """Return the IPv4 addresses for qname, or [] if none could be obtained."""
        if not qname:
            return []
        cached = self._cache_get(qname)
        if cached is not None:
            return cached
        try:
            addresses, ttl = await self._with_retries(self._query, qname)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning("DoH resolution error for %s: %s", qname, str(e) or type(e).__name__)
            return []
        if addresses:
            self._cache_set(qname, addresses, ttl)
        return addresses
