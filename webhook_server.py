#!/usr/bin/env python3
"""
Webhook receiver for Rainforest collection results.

POST <WEBHOOK_PATH> takes the collection webhook, imports every result page
and answers in plain text. With WEBHOOK_BACKGROUND enabled the payload is
validated, answered with 202 and imported after the response.
"""

import json
from contextlib import asynccontextmanager
from typing import Callable, Dict

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from config import Config, get_config
from logging_config import get_logger, log_exception, log_system_event
from importer.collection_processor import CollectionProcessor, WebhookPayloadError, parse_webhook_payload
from importer.context import ImportContext, build_rate_limiters
from importer.rate_limiter import RateLimiter

logger = get_logger('webhook')

OTHER_METHODS = ["GET", "PUT", "PATCH", "DELETE", "OPTIONS"]


def default_context_factory(config: Config, rate_limiters: Dict[str, RateLimiter]) -> ImportContext:
    return ImportContext(config, rate_limiters=rate_limiters)


def create_app(config: Config = None,
               context_factory: Callable[[Config, Dict[str, RateLimiter]], ImportContext] = None,
               rate_limiters: Dict[str, RateLimiter] = None) -> FastAPI:
    """
    Create the webhook application.

    Args:
        config: Importer configuration (global configuration when omitted)
        context_factory: Builds the ImportContext of each webhook run
        rate_limiters: Limiters shared by all runs of this application
    """
    config = config or get_config()
    context_factory = context_factory or default_context_factory
    rate_limiters = rate_limiters or build_rate_limiters(config)
    active_contexts = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_system_event(logger, 'Webhook Server Started', {
            'path': config.webhook_path,
            'background': config.webhook_background,
        })
        yield
        for context in list(active_contexts):
            context.cancel()
        log_system_event(logger, 'Webhook Server Stopped')

    app = FastAPI(
        title="Shopware Collection Importer",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    def run_import(payload: Dict) -> Dict:
        context = context_factory(config, rate_limiters)
        active_contexts.add(context)
        try:
            stats = CollectionProcessor(context).process_webhook(payload)
        finally:
            active_contexts.discard(context)

        log_system_event(logger, 'Collection Processed', {
            'pages_processed': stats['pages_processed'],
            'pages_failed': stats['pages_failed'],
            'products_created': stats['products_created'],
            'products_skipped': stats['products_skipped'],
            'products_failed': stats['products_failed'],
        })
        return stats

    def run_import_in_background(payload: Dict) -> None:
        try:
            run_import(payload)
        except Exception as e:
            log_exception(logger, 'Background Webhook Processing', e)

    @app.post(config.webhook_path, response_class=PlainTextResponse)
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
        body = await request.body()
        logger.info(f"Webhook received ({len(body)} bytes)")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Invalid JSON payload: {e}")
            return PlainTextResponse("Invalid JSON payload", status_code=400)

        try:
            parse_webhook_payload(payload)
        except WebhookPayloadError as e:
            logger.error(str(e))
            return PlainTextResponse(str(e), status_code=400)

        if config.webhook_background:
            background_tasks.add_task(run_import_in_background, payload)
            return PlainTextResponse("Webhook accepted", status_code=202)

        try:
            await run_in_threadpool(run_import, payload)
        except Exception as e:
            log_exception(logger, 'Webhook Processing', e)
            return PlainTextResponse(f"An error occurred: {e}", status_code=500)

        return PlainTextResponse("Webhook processed successfully", status_code=200)

    @app.api_route(config.webhook_path, methods=OTHER_METHODS, include_in_schema=False)
    async def method_not_allowed():
        return PlainTextResponse("Method Not Allowed", status_code=405, headers={'Allow': 'POST'})

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "ok"

    return app


def serve(config: Config = None) -> None:
    """Run the webhook server with uvicorn."""
    import uvicorn

    config = config or get_config()
    uvicorn.run(
        create_app(config),
        host=config.webhook_host,
        port=config.webhook_port,
        log_config=None,
    )
