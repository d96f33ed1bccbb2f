"""
Конфигурация trade-ad воркера.
✔️ Автоматическая загрузка .env
✔️ Все числа с дефолтами, кривое значение в env не роняет процесс
"""
import os
from typing import List
from dotenv import load_dotenv
load_dotenv(override=False)

def _env_bool(name: str, default: bool=False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ('1', 'true', 'yes', 'y', 'on')

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default

def _env_csv(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [p.strip() for p in raw.split(',') if p.strip()]

class _CFG(object):
    HOST: str = os.getenv('HOST', '0.0.0.0')
    PORT: int = _env_int('PORT', 3001)
    DEBUG: bool = _env_bool('DEBUG', False)
    LOG_PATH: str = os.getenv('LOG_PATH', 'worker.log')
    CORS_ORIGINS: List[str] = _env_csv('CORS_ORIGINS', '*')

    # memory guard
    RAM_LIMIT_MB: int = _env_int('RAM_LIMIT_MB', 400)
    MAX_JOBS: int = _env_int('MAX_JOBS', 1)
    QUEUE_CONCURRENCY: int = _env_int('QUEUE_CONCURRENCY', 1)
    RAM_SAMPLE_INTERVAL_MS: int = _env_int('RAM_SAMPLE_INTERVAL_MS', 50)
    RAM_CHECK_INTERVAL_SEC: float = _env_float('RAM_CHECK_INTERVAL_SEC', 60.0)
    RESTART_GRACE_SEC: float = _env_float('RESTART_GRACE_SEC', 1.0)
    RESTART_EXIT_CODE: int = _env_int('RESTART_EXIT_CODE', 1)
    FORCE_GC: bool = _env_bool('FORCE_GC', False)

    # disk cache
    CACHE_DIR: str = os.getenv('CACHE_DIR', 'image-cache')
    CACHE_MAX_FILES: int = _env_int('CACHE_MAX_FILES', 1000)
    CACHE_MAX_MB: int = _env_int('CACHE_MAX_MB', 50)
    ITEMS_CACHE_PATH: str = os.getenv('ITEMS_CACHE_PATH', 'items.json')

    # outbound http
    TIMEOUT: float = _env_float('HTTP_TIMEOUT', 10.0)
    CONNECT_TIMEOUT: float = _env_float('HTTP_CONNECT_TIMEOUT', 2.0)
    THUMB_SIZE: str = os.getenv('THUMB_SIZE', '420x420')
    RECENT_ADS_TTL: float = _env_float('RECENT_ADS_TTL', 1.0)

    FONT_PATH: str = os.getenv('FONT_PATH', '')
CFG = _CFG()
