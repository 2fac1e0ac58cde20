"""Feishu event callback intake (FastAPI)."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from loguru import logger

from channels.feishu_channel import FeishuChannel

from .dedup import DedupCache
from .dispatcher import Bridge


def create_app(
    bridge: Bridge,
    channel: FeishuChannel,
    verification_token: str = "",
    dedup_cache: Optional[DedupCache] = None,
    events_path: str = "/feishu/events",
    shutdown_grace: float = 10.0,
) -> FastAPI:
    """Build the webhook app; the lifespan owns channel, sweeper and drain."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not await channel.start():
            logger.warning("Feishu channel failed to start; replies will fail until it recovers")
        if dedup_cache is not None:
            dedup_cache.start()
        logger.info(f"Bridge listening for Feishu events on {events_path}")
        try:
            yield
        finally:
            logger.info("Received shutdown signal, stopping...")
            await bridge.shutdown(shutdown_grace)
            if dedup_cache is not None:
                await dedup_cache.stop()
            await channel.stop()
            logger.info("ClawdBot Bridge stopped")

    app = FastAPI(title="ClawdBot Feishu Bridge", lifespan=lifespan)
    channel.on_message(bridge.handle_message)

    @app.post(events_path)
    async def feishu_events(request: Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid event body")

        if "encrypt" in body:
            raise HTTPException(status_code=400, detail="Encrypted events are not supported, clear the Encrypt Key")

        token = body.get("token") or (body.get("header") or {}).get("token")
        if verification_token and token != verification_token:
            logger.warning("Rejected Feishu event with mismatching verification token")
            raise HTTPException(status_code=403, detail="Verification token mismatch")

        if body.get("type") == "url_verification":
            return {"challenge": body.get("challenge", "")}

        await channel.dispatch_event(body)
        return {"code": 0}

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {
            "status": "ok",
            "in_flight": bridge.in_flight,
            "channel": channel.get_status(),
        }

    return app
