from __future__ import annotations
import os, time, hashlib, logging
from typing import List, Optional, Tuple
from config import CFG

log = logging.getLogger('cache')

TMP_SUFFIX = '.tmp'


class ArtifactCache:
    """Flat directory of normalized PNGs keyed by source URL.

    get() never touches the network: on a miss the caller fetches, converts
    and hands the bytes to put(). Every put() is followed by an eviction pass
    that bounds both file count and total size.
    """

    def __init__(self, directory: Optional[str] = None, max_files: Optional[int] = None,
                 max_size_mb: Optional[float] = None):
        self.directory = directory or CFG.CACHE_DIR
        self.max_files = CFG.CACHE_MAX_FILES if max_files is None else int(max_files)
        size_mb = CFG.CACHE_MAX_MB if max_size_mb is None else max_size_mb
        self.max_size_bytes = int(size_mb * 1024 * 1024)
        os.makedirs(self.directory, exist_ok=True)

    @staticmethod
    def key_for(url: str) -> str:
        return hashlib.sha1(url.encode('utf-8')).hexdigest() + '.png'

    def path_for(self, url: str) -> str:
        return os.path.join(self.directory, self.key_for(url))

    async def get(self, url: str) -> Optional[bytes]:
        path = self.path_for(url)
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning(f'[cache] read fail {path}: {e}')
            return None
        # refresh recency so count eviction keeps hot icons
        try:
            os.utime(path, None)
        except OSError:
            pass
        return data

    async def put(self, url: str, data: bytes) -> None:
        path = self.path_for(url)
        tmp = path + TMP_SUFFIX
        try:
            with open(tmp, 'wb') as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            log.warning(f'[cache] write fail {path}: {e}')
            try:
                os.remove(tmp)
            except OSError:
                pass
        finally:
            self.evict()

    def _entries(self) -> List[Tuple[float, str, int]]:
        entries = []
        try:
            names = os.listdir(self.directory)
        except OSError as e:
            log.warning(f'[cache] listdir fail {self.directory}: {e}')
            return entries
        for name in names:
            if name.endswith(TMP_SUFFIX):
                continue
            p = os.path.join(self.directory, name)
            try:
                st = os.stat(p)
            except FileNotFoundError:
                continue
            if not os.path.isfile(p):
                continue
            entries.append((st.st_mtime, p, st.st_size))
        return entries

    def _remove(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except OSError as e:
            log.warning(f'[cache] delete fail {path}: {e}')
            return False

    def evict(self) -> None:
        """Count pass then size pass. Runs to completion without yielding."""
        t0 = time.time()
        entries = self._entries()

        # newest first, keep max_files
        entries.sort(key=lambda x: x[0], reverse=True)
        survivors = entries[:self.max_files]
        dropped = 0
        for entry in entries[self.max_files:]:
            if self._remove(entry[1]):
                dropped += 1
            else:
                survivors.append(entry)

        total = sum(sz for _, _, sz in survivors)
        if total > self.max_size_bytes:
            survivors.sort(key=lambda x: x[0])
            freed = 0
            for _, p, sz in survivors:
                if total - freed <= self.max_size_bytes:
                    break
                if self._remove(p):
                    freed += sz
                    dropped += 1
            total -= freed
        if dropped:
            log.info(f'[cache] evicted={dropped} total={total}B dt={time.time() - t0:.3f}s')

    def stats(self) -> dict:
        entries = self._entries()
        return {'files': len(entries), 'bytes': sum(sz for _, _, sz in entries)}
