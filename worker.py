"""
Trade Ad Image Worker
=====================
HTTP front end: admission check -> execution queue -> render pipeline.

    GET  /health     status + RAM numbers for the load balancer
    POST /generate   {"tradeData": [...]} -> image/png
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from config import CFG
from errors import AdmissionRejection, ValidationError
from job_queue import Job
from state import ServiceContext
from trade_imagegen import parse_trade

log = logging.getLogger('worker')

# Non-standard on purpose: the load balancer treats it as "route elsewhere".
STATUS_REJECTED = 367


def create_app(ctx: Optional[ServiceContext] = None) -> FastAPI:
    ctx = ctx or ServiceContext()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ctx.startup()
        log.info(f'Image Worker RAM limit: {ctx.monitor.limit_mb} MB, max concurrent jobs: {ctx.max_jobs}')
        try:
            yield
        finally:
            await ctx.shutdown()

    app = FastAPI(title='Trade Ad Image Worker', lifespan=lifespan)
    app.state.ctx = ctx
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CFG.CORS_ORIGINS,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    @app.get('/health')
    async def health():
        return ctx.health()

    @app.post('/generate')
    async def generate(request: Request, background: BackgroundTasks):
        try:
            ram_before = ctx.monitor.check_admission(ctx.active_jobs, ctx.max_jobs)
        except AdmissionRejection as e:
            return JSONResponse(status_code=STATUS_REJECTED, content=e.to_json())

        try:
            body = await request.json()
        except ValueError:
            body = None
        trade = body.get('tradeData') if isinstance(body, dict) else None
        if not trade:
            return JSONResponse(status_code=400, content={'error': 'Missing tradeData'})
        try:
            parse_trade(trade)
        except ValidationError as e:
            return JSONResponse(status_code=400, content={'error': 'Invalid tradeData', 'details': str(e)})

        ctx.active_jobs += 1
        job = Job(payload=trade)
        sampler = ctx.monitor.start_sampling()
        try:
            card = await ctx.run(job)
        except Exception as e:
            log.error(f'[Worker] Error generating image: {type(e).__name__}: {e}', exc_info=True)
            return JSONResponse(status_code=500, content={'error': 'Failed to generate image', 'details': str(e)})
        finally:
            ctx.active_jobs -= 1
            peak = await sampler.stop()
            try:
                ram_after = ctx.monitor.current_mb()
                log.info(f'[Worker] RAM peak: {peak}MB | RAM after: {ram_after}MB | Δ{ram_after - ram_before}MB')
            except Exception as e:
                log.warning(f'[Worker] RAM peak: {peak}MB | RAM after: unavailable ({type(e).__name__}: {e})')
            # runs once the response is on the wire
            background.add_task(ctx.monitor.after_job, peak)
            ctx.collect_garbage()

        return Response(content=card.png, media_type='image/png')

    return app
