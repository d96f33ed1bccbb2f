from __future__ import annotations
import os, asyncio, argparse, logging
from typing import List

import rolimons_api
from errors import ResolutionFailure, WorkerError
from job_queue import Job
from state import ServiceContext


async def render_ads(ctx: ServiceContext, ads: List, out_dir: str) -> List[str]:
    """Run each ad through the worker pipeline and write <ad_id>.png. Returns written paths."""
    os.makedirs(out_dir, exist_ok=True)
    written: List[str] = []
    for ad in ads:
        job = Job(payload=ad)
        try:
            card = await ctx.run(job)
        except WorkerError as e:
            print(f'[render] skip ad ({job.state.value}): {e}')
            continue
        p = os.path.join(out_dir, f'{card.ad_id}.png')
        with open(p, 'wb') as f:
            f.write(card.png)
        written.append(p)
    return written


async def main() -> int:
    ap = argparse.ArgumentParser(description='Render the most recent Rolimons trade ads to PNG files')
    ap.add_argument('--limit', type=int, default=25, help='How many recent ads to request')
    ap.add_argument('--count', type=int, default=5, help='How many of them to render')
    ap.add_argument('--out', type=str, default='cards', help='Output directory')
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s | %(levelname)s | %(name)s | %(message)s')

    ctx = ServiceContext()
    try:
        try:
            ads = await rolimons_api.get_recent_trade_ads(ctx.client, args.limit)
        except ResolutionFailure as e:
            print(f'[render] no ads: {e}')
            return 1
        paths = await render_ads(ctx, ads[:max(0, args.count)], args.out)
        print(f'[render] wrote {len(paths)} cards -> {args.out}')
        return 0
    finally:
        await ctx.shutdown()


if __name__ == '__main__':
    raise SystemExit(asyncio.run(main()))
