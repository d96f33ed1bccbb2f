from __future__ import annotations
import asyncio, io, logging
from typing import Dict, Iterable, List, Optional

import httpx
from PIL import Image

from config import CFG

log = logging.getLogger('thumbs')

THUMB_URL = 'https://thumbnails.roblox.com/v1/assets'
BATCH = 100
# thumbnails that are still rendering on Roblox's side
THUMB_REPOLL_DELAYS = [0.15, 0.30, 0.60]


def _params(ids: Iterable[int], size: str) -> dict:
    return {'assetIds': ','.join(map(str, ids)), 'size': size, 'format': 'Png', 'isCircular': 'false'}


def _parse(js) -> tuple:
    urls, pending = ({}, [])
    rows = js.get('data') if isinstance(js, dict) else None
    for rec in rows or []:
        if not isinstance(rec, dict):
            continue
        try:
            aid = int(rec.get('targetId'))
        except (TypeError, ValueError):
            continue
        url = rec.get('imageUrl')
        state = rec.get('state')
        if url and state in (None, 'Completed'):
            urls[aid] = url
        elif state and state != 'Completed':
            pending.append(aid)
    return (urls, pending)


async def _one_batch(client: httpx.AsyncClient, ids: List[int], size: str) -> Dict[int, str]:
    try:
        r = await client.get(THUMB_URL, params=_params(ids, size))
        log.info(f'[thumb] batch {ids[0]}..{ids[-1]} count={len(ids)} size={size} status={r.status_code}')
        r.raise_for_status()
        urls, pending = _parse(r.json())
        for d in THUMB_REPOLL_DELAYS:
            if not pending:
                break
            await asyncio.sleep(d)
            rr = await client.get(THUMB_URL, params=_params(pending, size))
            if rr.status_code != 200:
                break
            got, next_pend = _parse(rr.json())
            urls.update(got)
            pending = [a for a in next_pend if a not in urls]
        if pending:
            log.info(f'[thumb] still pending after repoll: {pending[:5]}')
        return urls
    except (httpx.HTTPError, ValueError) as e:
        log.warning(f'[thumb] batch fail {ids[:3]}..: {type(e).__name__}: {e}')
        return {}


async def fetch_thumbnail_urls(client: httpx.AsyncClient, ids: Iterable[int],
                               size: Optional[str] = None) -> Dict[int, str]:
    """Batch lookup id -> image URL. Failed batches just leave their ids out."""
    size = size or CFG.THUMB_SIZE
    uniq: List[int] = []
    for a in ids:
        if int(a) not in uniq:
            uniq.append(int(a))
    if not uniq:
        return {}
    out: Dict[int, str] = {}
    for i in range(0, len(uniq), BATCH):
        out.update(await _one_batch(client, uniq[i:i + BATCH], size))
    return out


async def download(client: httpx.AsyncClient, url: str) -> bytes:
    r = await client.get(url)
    r.raise_for_status()
    return r.content


def to_png(data: bytes) -> bytes:
    """Normalize whatever the CDN served (png/webp/jpeg) to RGBA PNG."""
    with Image.open(io.BytesIO(data)) as im:
        im = im.convert('RGBA')
        out = io.BytesIO()
        im.save(out, format='PNG')
        return out.getvalue()
