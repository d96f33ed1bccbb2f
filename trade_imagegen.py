from __future__ import annotations
import asyncio, io, logging, time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from PIL import Image, ImageDraw, ImageFont

from cache import ArtifactCache
from cache_locks import KeyLocks
from config import CFG
from errors import PipelineFailure, ValidationError
from item_data import ItemStore
import roblox_thumbs

logger = logging.getLogger('imagegen')

SLOTS = 4

TAG_MAP: Dict[int, Dict[str, str]] = {
    1: {'label': 'ANY', 'color': '#22c55e', 'image_url': 'https://www.rolimons.com/images/tradetagany-420.png'},
    2: {'label': 'DEMAND', 'color': '#7c3aed', 'image_url': 'https://www.rolimons.com/images/tradetagdemand-420.png'},
    4: {'label': 'RARES', 'color': '#10b981', 'image_url': 'https://www.rolimons.com/images/tradetagrares-420.png'},
    5: {'label': 'RAP', 'color': '#22c55e', 'image_url': 'https://www.rolimons.com/images/tradetagrap-420.png'},
    6: {'label': 'WISHLIST', 'color': '#3b82f6', 'image_url': 'https://www.rolimons.com/images/tradetagwishlist-420.png'},
    7: {'label': 'ROBUX', 'color': '#6366f1', 'image_url': 'https://www.rolimons.com/images/tradetagrobux-420.png'},
    8: {'label': 'UPGRADE', 'color': '#ef4444', 'image_url': 'https://www.rolimons.com/images/tradetagupgrade-420.png'},
    9: {'label': 'DOWNGRADES', 'color': '#f59e0b', 'image_url': 'https://www.rolimons.com/images/tradetagdowngrade-420.png'},
    10: {'label': 'ADDS', 'color': '#f59e0b', 'image_url': 'https://www.rolimons.com/images/tradetagadds-420.png'},
}
UNKNOWN_TAG = {'label': 'UNKNOWN', 'color': '#555555', 'image_url': ''}

# Card geometry
CANVAS_W, CANVAS_H = 1240, 330
CANVAS_BG = (24, 27, 32, 255)
SLOT_FILL = '#2a2f36'
SLOT_SIZE = 120
SLOT_RADIUS = 14
SLOT_PITCH = 140
ICON_SIZE = 100
ICON_INSET = 10
OFFER_X = 60
REQUEST_X = 640
SLOTS_Y = 70
TEXT_COLOR = (255, 255, 255, 255)
MUTED_COLOR = (160, 166, 176, 255)


def tag_info(tag_id: Any) -> Dict[str, str]:
    try:
        return TAG_MAP.get(int(tag_id), UNKNOWN_TAG)
    except (TypeError, ValueError):
        return UNKNOWN_TAG


# =========================
# Payload
# =========================

def _ids(side: Dict[str, Any], key: str, what: str) -> List[int]:
    raw = side.get(key) or []
    if not isinstance(raw, list):
        raise ValidationError(f'{what}.{key} must be a list')
    try:
        return [int(x) for x in raw]
    except (TypeError, ValueError) as e:
        raise ValidationError(f'{what}.{key}: {e}') from e


def parse_trade(trade: Any) -> Tuple[Any, Dict[str, List[int]], Dict[str, List[int]]]:
    """[ad_id, ts, user_id, username, offer, request] -> (ad_id, offer, request)"""
    if not isinstance(trade, (list, tuple)) or len(trade) < 6:
        raise ValidationError('tradeData must be [id, timestamp, userId, username, offer, request]')
    offer, request = trade[4], trade[5]
    if not isinstance(offer, dict) or not isinstance(request, dict):
        raise ValidationError('offer and request must be objects')
    return (
        trade[0],
        {'items': _ids(offer, 'items', 'offer')},
        {'items': _ids(request, 'items', 'request'), 'tags': _ids(request, 'tags', 'request')},
    )


def _uniq(xs: Sequence[int]) -> List[int]:
    seen: set = set()
    out: List[int] = []
    for x in xs:
        if x not in seen:
            seen.add(x)
            out.append(x)
    return out


# =========================
# Stats
# =========================

def _num(v) -> int:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0
    return int(v)


def item_value(rec: Optional[Dict[str, Any]]) -> int:
    if not rec:
        return 0
    v = rec.get('value')
    if v is None:
        v = rec.get('rap')
    return _num(v)


def item_rap(rec: Optional[Dict[str, Any]]) -> int:
    return _num(rec.get('rap')) if rec else 0


def calculate_value_and_rap(offer: Dict[str, List[int]], request: Dict[str, List[int]],
                            lookup: Callable[[Any], Optional[Dict[str, Any]]]) -> Dict[str, int]:
    def total(ids, fn):
        return sum(fn(lookup(i)) for i in ids or [])
    return {
        'offerValue': total(offer.get('items'), item_value),
        'offerRap': total(offer.get('items'), item_rap),
        'requestValue': total(request.get('items'), item_value),
        'requestRap': total(request.get('items'), item_rap),
    }


# =========================
# Slots
# =========================

def empty_slot() -> Dict[str, Any]:
    return {'type': 'empty', 'id': None, 'icon': None}


def pad_to_four(slots: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    slots = list(slots[:SLOTS])
    while len(slots) < SLOTS:
        slots.append(empty_slot())
    return slots


def build_offer_array(offer: Dict[str, List[int]], item_icons: Dict[int, Optional[bytes]]) -> List[Dict[str, Any]]:
    items = [{'type': 'item', 'id': i, 'icon': item_icons.get(i)} for i in (offer.get('items') or [])[:SLOTS]]
    return pad_to_four(items)


def build_request_array(request: Dict[str, List[int]], item_icons: Dict[int, Optional[bytes]],
                        tag_icons: Dict[int, Optional[bytes]]) -> List[Dict[str, Any]]:
    tags = [{'type': 'tag', 'id': t, 'tag': tag_info(t), 'icon': tag_icons.get(t)} for t in request.get('tags') or []]
    items = [{'type': 'item', 'id': i, 'icon': item_icons.get(i)} for i in request.get('items') or []]
    return pad_to_four(tags + items)


# =========================
# Rendering
# =========================

def _font(sz):
    if CFG.FONT_PATH:
        try:
            return ImageFont.truetype(CFG.FONT_PATH, sz)
        except OSError:
            pass
    return ImageFont.load_default()


def layout4(start_x: int) -> List[Tuple[int, int]]:
    return [(start_x + i * SLOT_PITCH, SLOTS_Y) for i in range(SLOTS)]


def center_x(start_x: int) -> float:
    first, last = start_x, start_x + (SLOTS - 1) * SLOT_PITCH + SLOT_SIZE
    return first + (last - first) / 2


def _paste_icon(canvas: Image.Image, icon: bytes, x: int, y: int) -> bool:
    try:
        with Image.open(io.BytesIO(icon)) as src:
            im = src.convert('RGBA')
    except Exception as e:
        logger.warning(f'[card] icon decode fail: {type(e).__name__}: {e}')
        return False
    im.thumbnail((ICON_SIZE, ICON_SIZE))
    ox = x + ICON_INSET + (ICON_SIZE - im.width) // 2
    oy = y + ICON_INSET + (ICON_SIZE - im.height) // 2
    canvas.alpha_composite(im, (ox, oy))
    return True


def _draw_centered(draw: ImageDraw.ImageDraw, cx: float, y: int, text: str, font, fill) -> None:
    w = draw.textlength(text, font=font)
    draw.text((cx - w / 2, y), text, font=font, fill=fill)


def _draw_side(canvas: Image.Image, slots: List[Dict[str, Any]], start_x: int, title: str, font, small) -> None:
    draw = ImageDraw.Draw(canvas)
    draw.text((start_x, 30), title, font=font, fill=MUTED_COLOR)
    for slot, (x, y) in zip(slots, layout4(start_x)):
        draw.rounded_rectangle((x, y, x + SLOT_SIZE, y + SLOT_SIZE), radius=SLOT_RADIUS, fill=SLOT_FILL)
        if slot.get('icon') and _paste_icon(canvas, slot['icon'], x, y):
            continue
        if slot['type'] == 'tag':
            tag = slot.get('tag') or UNKNOWN_TAG
            _draw_centered(draw, x + SLOT_SIZE / 2, y + SLOT_SIZE // 2 - 6, tag['label'], small, tag['color'])


def _compose_card(offer_slots, request_slots, totals: Dict[str, int]) -> bytes:
    canvas = Image.new('RGBA', (CANVAS_W, CANVAS_H), CANVAS_BG)
    font, small = _font(22), _font(16)
    _draw_side(canvas, offer_slots, OFFER_X, 'OFFER', font, small)
    _draw_side(canvas, request_slots, REQUEST_X, 'REQUEST', font, small)

    draw = ImageDraw.Draw(canvas)
    stats_y = SLOTS_Y + SLOT_SIZE + 30
    for start_x, side in ((OFFER_X, 'offer'), (REQUEST_X, 'request')):
        cx = center_x(start_x)
        _draw_centered(draw, cx, stats_y, f"Value: {totals[side + 'Value']:,}", font, TEXT_COLOR)
        _draw_centered(draw, cx, stats_y + 34, f"RAP: {totals[side + 'Rap']:,}", font, MUTED_COLOR)

    out = io.BytesIO()
    canvas.convert('RGB').save(out, 'PNG', compress_level=6)
    return out.getvalue()


async def render_card(offer_slots, request_slots, totals: Dict[str, int]) -> bytes:
    return await asyncio.to_thread(_compose_card, offer_slots, request_slots, totals)


Renderer = Callable[[List[Dict[str, Any]], List[Dict[str, Any]], Dict[str, int]], Awaitable[bytes]]


# =========================
# Pipeline
# =========================

@dataclass
class TradeCard:
    ad_id: Any
    png: bytes
    offer: List[Dict[str, Any]] = field(default_factory=list)
    request: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)


class TradePipeline:
    def __init__(self, cache: ArtifactCache, items: ItemStore, client: httpx.AsyncClient,
                 render: Renderer = render_card, thumb_size: Optional[str] = None):
        self.cache = cache
        self.items = items
        self.client = client
        self.render = render
        self.thumb_size = thumb_size or CFG.THUMB_SIZE
        self._locks = KeyLocks()

    async def resolve_icon(self, url: str) -> Optional[bytes]:
        """Cached PNG for url, fetching and normalizing on a miss. None on any failure."""
        if not url:
            return None
        try:
            async with self._locks.get_lock(url):
                return await self._resolve_locked(url)
        finally:
            self._locks.discard(url)

    async def _resolve_locked(self, url: str) -> Optional[bytes]:
        data = await self.cache.get(url)
        if data is not None:
            logger.debug(f'[thumb] cache HIT url={url[:100]}')
            return data
        try:
            raw = await roblox_thumbs.download(self.client, url)
            data = await asyncio.to_thread(roblox_thumbs.to_png, raw)
        except Exception as e:
            logger.warning(f'[thumb] Failed to download/convert {url[:100]}: {type(e).__name__}: {e}')
            return None
        await self.cache.put(url, data)
        return data

    async def resolve_item_icons(self, item_ids: List[int]) -> Dict[int, Optional[bytes]]:
        icons: Dict[int, Optional[bytes]] = {i: None for i in item_ids}
        if not item_ids:
            return icons
        urls = await roblox_thumbs.fetch_thumbnail_urls(self.client, item_ids, self.thumb_size)
        for i in item_ids:
            icons[i] = await self.resolve_icon(urls.get(i, ''))
        return icons

    async def resolve_tag_icons(self, tag_ids: List[int]) -> Dict[int, Optional[bytes]]:
        return {t: await self.resolve_icon(tag_info(t)['image_url']) for t in tag_ids}

    async def generate(self, trade: Any) -> TradeCard:
        ad_id, offer, request = parse_trade(trade)
        t0 = time.time()
        await self.items.ensure_loaded()
        t_items = time.time()

        item_ids = _uniq(offer['items'] + request['items'])
        tag_ids = _uniq(request['tags'])
        item_icons = await self.resolve_item_icons(item_ids)
        tag_icons = await self.resolve_tag_icons(tag_ids)
        t_icons = time.time()

        totals = calculate_value_and_rap(offer, request, self.items.get)
        offer_slots = build_offer_array(offer, item_icons)
        request_slots = build_request_array(request, item_icons, tag_icons)
        try:
            png = await self.render(offer_slots, request_slots, totals)
        except Exception as e:
            raise PipelineFailure(f'{type(e).__name__}: {e}') from e
        logger.info(
            f'[card] ad={ad_id} items={len(item_ids)} tags={len(tag_ids)} bytes={len(png)} '
            f'load={t_items-t0:.3f}s icons={t_icons-t_items:.3f}s render={time.time()-t_icons:.3f}s'
        )
        return TradeCard(ad_id=ad_id, png=png, offer=offer_slots, request=request_slots, totals=totals)
