import logging
from logging.handlers import RotatingFileHandler

import uvicorn

from config import CFG
from worker import create_app


def _setup_logging():
    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(logging.DEBUG if CFG.DEBUG else logging.INFO)
    fmt = logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s')
    fh = RotatingFileHandler(CFG.LOG_PATH, maxBytes=2_000_000, backupCount=3, encoding='utf-8')
    fh.setFormatter(fmt)
    root.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(sh)


def main():
    _setup_logging()
    app = create_app()
    logging.getLogger('worker').info(f'Image Worker running on port {CFG.PORT}')
    uvicorn.run(app, host=CFG.HOST, port=CFG.PORT, log_config=None)


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print('🛑 worker stopped')
