from __future__ import annotations
import asyncio, json, logging, os, time
from typing import Any, Awaitable, Callable, Dict, Optional

from config import CFG
from errors import ResolutionFailure

log = logging.getLogger('items')

Loader = Callable[[], Awaitable[Dict[str, Dict[str, Any]]]]


class ItemStore:
    """Item id -> {name, rap, value, ...}, loaded once per process.

    Source order: local JSON file, else the remote loader (result is written
    back to the file). Concurrent callers during a load await the same attempt,
    whether it succeeds or not. A failed load leaves the store empty so the
    next job tries again.
    """

    def __init__(self, remote: Optional[Loader] = None, path: Optional[str] = None):
        self.path = path or CFG.ITEMS_CACHE_PATH
        self._remote = remote
        self._items: Dict[str, Dict[str, Any]] = {}
        self._loaded = False
        self._inflight: Optional[asyncio.Task] = None
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: Any) -> Optional[Dict[str, Any]]:
        return self._items.get(str(item_id))

    def preload(self, items: Dict[Any, Dict[str, Any]]) -> None:
        self._items = {str(k): v for k, v in items.items()}
        self._loaded = True

    async def ensure_loaded(self) -> Dict[str, Dict[str, Any]]:
        if self._loaded:
            return self._items
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._attempt())
        await asyncio.shield(self._inflight)
        return self._items

    async def _attempt(self) -> None:
        try:
            await self._load()
        finally:
            self._inflight = None

    def _read_file(self) -> Optional[Dict[str, Dict[str, Any]]]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning(f'[Worker] Failed to load items from cache: {e}')
            return None
        if not isinstance(data, dict):
            log.warning('[Worker] items cache is not a JSON object, ignoring')
            return None
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def _write_file(self, items: Dict[str, Dict[str, Any]]) -> None:
        tmp = self.path + '.tmp'
        try:
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(items, f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as e:
            log.warning(f'[Worker] Failed to persist items cache: {e}')

    async def _load(self) -> None:
        t0 = time.time()
        self.load_count += 1
        items = self._read_file()
        if items is not None:
            self._items = items
            self._loaded = True
            log.info(f'[Worker] Loaded {len(items)} items from cache file dt={time.time()-t0:.3f}s')
            return
        if self._remote is None:
            log.error('[Worker] No items cache file and no remote source configured')
            return
        try:
            items = await self._remote()
        except ResolutionFailure as e:
            log.error(f'[Worker] Failed to fetch item data: {e}')
            return
        self._items = items
        self._loaded = True
        self._write_file(items)
        log.info(f'[Worker] Fetched {len(items)} items from official API dt={time.time()-t0:.3f}s')
