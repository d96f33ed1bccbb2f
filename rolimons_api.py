from __future__ import annotations
import asyncio, logging, time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import CFG
from errors import ResolutionFailure

log = logging.getLogger('rolimons')

RECENT_ADS_URL = 'https://api.rolimons.com/tradeads/v1/getrecentads'
ITEM_DETAILS_URL = 'https://api.rolimons.com/items/v1/itemdetails'
RETRIES = 3

# remote tuple order of itemdetails
ITEM_FIELDS = ('name', 'acronym', 'rap', 'value', 'default_value', 'demand', 'trend', 'projected', 'hyped', 'rare')

# (limit) -> (ts, ads)
_RECENT_CACHE: Dict[int, Tuple[float, List[Any]]] = {}


async def _req_json(client: httpx.AsyncClient, method: str, url: str, **kw) -> Any:
    for attempt in range(0, RETRIES):
        try:
            r = await client.request(method, url, **kw)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if code in (429, 500, 502, 503, 504) and attempt < RETRIES - 1:
                await asyncio.sleep(0.15 * (attempt + 1))
                continue
            raise
        except httpx.TransportError:
            if attempt < RETRIES - 1:
                await asyncio.sleep(0.15 * (attempt + 1))
                continue
            raise


def normalize_ads(data: Any) -> List[Any]:
    """Pick the ads list out of whichever envelope the API returned this week."""
    if isinstance(data, dict) and isinstance(data.get('trade_ads'), list):
        return data['trade_ads']
    if isinstance(data, dict) and isinstance(data.get('ads'), list):
        return data['ads']
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get('data'), list):
        return data['data']
    shape = sorted(data.keys()) if isinstance(data, dict) else type(data).__name__
    raise ResolutionFailure(f'recent ads: unknown response shape {shape}')


async def get_recent_trade_ads(client: httpx.AsyncClient, limit: int = 100,
                               ttl: Optional[float] = None) -> List[Any]:
    ttl = CFG.RECENT_ADS_TTL if ttl is None else ttl
    now = time.time()
    hit = _RECENT_CACHE.get(limit)
    if hit and now - hit[0] < ttl:
        return hit[1]
    try:
        data = await _req_json(client, 'GET', RECENT_ADS_URL, params={'limit': int(limit)})
    except (httpx.HTTPError, ValueError) as e:
        raise ResolutionFailure(f'recent ads: {type(e).__name__}: {e}') from e
    ads = normalize_ads(data)
    log.info(f'[API] recent ads limit={limit} got={len(ads)}')
    _RECENT_CACHE[limit] = (now, ads)
    return ads


def _record(item_id: str, raw: Any) -> Dict[str, Any]:
    vals = list(raw) if isinstance(raw, (list, tuple)) else []
    vals += [None] * (len(ITEM_FIELDS) - len(vals))
    rec: Dict[str, Any] = {'id': int(item_id)}
    rec.update(zip(ITEM_FIELDS, vals))
    # -1 == "no value", let RAP stand in
    if isinstance(rec.get('value'), (int, float)) and rec['value'] < 0:
        rec['value'] = None
    return rec


async def fetch_item_details(client: httpx.AsyncClient) -> Dict[str, Dict[str, Any]]:
    """id -> record for every item Rolimons knows about."""
    try:
        data = await _req_json(client, 'GET', ITEM_DETAILS_URL)
    except (httpx.HTTPError, ValueError) as e:
        raise ResolutionFailure(f'itemdetails: {type(e).__name__}: {e}') from e
    if not isinstance(data, dict) or not data.get('success') or not isinstance(data.get('items'), dict):
        raise ResolutionFailure('itemdetails: invalid response')
    out: Dict[str, Dict[str, Any]] = {}
    for item_id, raw in data['items'].items():
        try:
            out[str(item_id)] = _record(item_id, raw)
        except (TypeError, ValueError):
            log.debug(f'[API] skip bad item row {item_id!r}')
    return out
