import asyncio
import logging
import os
import sys
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import aiohttp
import requests

from sinkholed.core.blocklist import Blocklist


logger = logging.getLogger("sinkholed.ListUpdater")

FETCH_TIMEOUT = 30


def _split_sources(urls) -> List[str]:
    if not urls:
        return []
    if isinstance(urls, str):
        # allow comma-separated list
        urls = urls.split(',')
    return [u.strip() for u in urls if u and u.strip()]


def parse_blocklist(text: str) -> Set[str]:
    """Parse blocklist text: one domain per line, '#' comments.

    Hosts-file lines ("0.0.0.0 ads.example.com") contribute their second field.
    """
    domains = set()
    for line in text.splitlines():
        line = line.split('#', 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) >= 2 and (parts[0].count('.') == 3 or ':' in parts[0]):
            domains.add(parts[1])
        else:
            domains.add(parts[0])
    return domains


def load_blocklist_file(path: Optional[str]) -> Set[str]:
    if not path:
        return set()
    if not os.path.isfile(path):
        logger.warning("Blocklist file not found: %s", path)
        return set()
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        domains = parse_blocklist(f.read())
    logger.debug("Loaded %d domains from %s", len(domains), path)
    return domains


def fetch_blocklists_sync(urls) -> Tuple[Set[str], List[Tuple[str, bool]]]:
    """Fetch blocklists from URLs or local paths synchronously.

    Returns (domains, results) where results is a list of (source, True/False).
    """
    domains = set()
    results = []
    for raw in _split_sources(urls):
        parsed = urlparse(raw)
        try:
            if parsed.scheme in ('http', 'https'):
                resp = requests.get(raw, timeout=FETCH_TIMEOUT)
                resp.raise_for_status()
                domains |= parse_blocklist(resp.text)
                results.append((raw, True))
            elif parsed.scheme == '' and os.path.isfile(raw):
                domains |= load_blocklist_file(raw)
                results.append((raw, True))
            else:
                results.append((raw, False))
        except (requests.RequestException, OSError) as e:
            logger.warning("Failed to fetch %s: %s", raw, e)
            results.append((raw, False))
    return domains, results


async def fetch_blocklists(urls, session: Optional[aiohttp.ClientSession] = None) -> Tuple[Set[str], List[Tuple[str, bool]]]:
    """Async fetch using aiohttp. Returns (domains, results) like fetch_blocklists_sync."""
    sources = _split_sources(urls)
    domains = set()
    results = []
    if not sources:
        return domains, results
    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT))
    try:
        for raw in sources:
            parsed = urlparse(raw)
            if parsed.scheme in ('http', 'https'):
                try:
                    async with session.get(raw) as resp:
                        resp.raise_for_status()
                        text = await resp.text()
                    domains |= parse_blocklist(text)
                    results.append((raw, True))
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.warning("Failed to fetch %s: %s", raw, e)
                    results.append((raw, False))
            elif parsed.scheme == '' and os.path.isfile(raw):
                try:
                    domains |= load_blocklist_file(raw)
                    results.append((raw, True))
                except OSError as e:
                    logger.warning("Failed to read local blocklist %s: %s", raw, e)
                    results.append((raw, False))
            else:
                results.append((raw, False))
    finally:
        if own_session:
            await session.close()
    return domains, results


async def refresh_blocklist(blocklist: Blocklist, path: Optional[str], urls: Iterable[str] = ()) -> bool:
    """Reload the blocklist file and remote sources and swap them in.

    If any source fails the current list is kept and False is returned.
    """
    try:
        domains = load_blocklist_file(path)
    except OSError as e:
        logger.warning("Failed to reload blocklist file %s: %s", path, e)
        return False
    remote, results = await fetch_blocklists(urls)
    failed = [src for src, ok in results if not ok]
    if failed:
        logger.warning("Some blocklist sources failed to fetch: %s; keeping current list", failed)
        return False
    blocklist.replace(domains | remote)
    return True


async def periodic_refresh(blocklist: Blocklist, path: Optional[str], urls: Iterable[str] = (), interval_seconds: float = 86400):
    while True:
        await asyncio.sleep(interval_seconds)
        await refresh_blocklist(blocklist, path, urls)


if __name__ == '__main__':
    # quick check: print the number of domains each source yields
    found, status = fetch_blocklists_sync(sys.argv[1:])
    for src, ok in status:
        print(f"{src}: {'ok' if ok else 'failed'}")
    print(f"{len(found)} domains")
