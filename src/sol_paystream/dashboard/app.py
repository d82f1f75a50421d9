"""Dashboard application factory: JSON read paths and live websocket sessions."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .. import __version__
from ..datalake.schemas import TransactionStatus
from ..datalake.storage import InvalidStatusTransition, StoreError
from ..ingestion.ledger import LedgerError, is_valid_address
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..realtime.publisher import Subscriber
from ..reconciliation.engine import ReconciliationError
from ..utils.constants import utc_now
from .state import DashboardState
from .utils import transaction_view, transactions_csv

_LOGGER = get_logger(__name__)


def _require_address(address: str) -> str:
    if not is_valid_address(address):
        raise HTTPException(status_code=400, detail="Invalid Solana address")
    return address


def create_dashboard_app(state: DashboardState) -> FastAPI:
    app = FastAPI(title="Solana Payment Stream", version=__version__)
    cfg = state.config.dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def healthcheck() -> Dict[str, Any]:
        return {"status": "ok", "watching": len(state.ctx.loop.addresses())}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics() -> str:
        return METRICS.export_prometheus()

    @app.get("/api/metrics")
    async def api_metrics() -> JSONResponse:
        return JSONResponse(state.metrics_snapshot())

    @app.get("/api/wallets/{address}/transactions")
    async def api_transactions(
        address: str,
        page: int = Query(1, ge=1),
        limit: Optional[int] = Query(None, ge=1, le=state.ctx.engine.config.max_page_size),
    ) -> JSONResponse:
        _require_address(address)
        try:
            return JSONResponse(await state.list_transactions(address, page=page, limit=limit))
        except ReconciliationError as exc:
            # Keep the caller's previous view on screen.
            body: Dict[str, Any] = {"detail": str(exc)}
            cached = state.last_known_transactions(address)
            if cached is not None:
                body.update(cached)
            return JSONResponse(body, status_code=502)

    @app.get("/api/wallets/{address}/balance")
    async def api_balance(address: str) -> JSONResponse:
        _require_address(address)
        try:
            return JSONResponse(await state.balance(address))
        except LedgerError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/api/wallets/{address}/stats")
    async def api_stats(address: str, days: Optional[int] = Query(None, ge=1, le=365)) -> JSONResponse:
        _require_address(address)
        try:
            return JSONResponse(await state.stats(address, days=days))
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get("/api/wallets/{address}/export")
    async def api_export(address: str, format: str = Query("json", pattern="^(json|csv)$")) -> Response:
        _require_address(address)
        try:
            records = await state.export(address)
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        if format == "csv":
            return Response(
                transactions_csv(records),
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{address}.csv"'},
            )
        return JSONResponse(
            {
                "address": address,
                "exportedAt": utc_now().isoformat(),
                "count": len(records),
                "transactions": [transaction_view(record) for record in records],
            }
        )

    @app.get("/api/transactions/{signature}")
    async def api_transaction(signature: str) -> JSONResponse:
        try:
            return JSONResponse(await state.transaction(signature))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Transaction not found") from exc
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.post("/api/wallets/{address}/watch")
    async def api_watch(address: str) -> JSONResponse:
        _require_address(address)
        started = await state.pin(address)
        return JSONResponse({"address": address, "watching": True, "started": started})

    @app.delete("/api/wallets/{address}/watch")
    async def api_unwatch(address: str) -> JSONResponse:
        _require_address(address)
        stopped = await state.unpin(address)
        return JSONResponse({"address": address, "watching": state.ctx.loop.is_watching(address), "stopped": stopped})

    @app.get("/api/leaderboard")
    async def api_leaderboard(
        limit: int = Query(10, ge=1, le=100),
        days: Optional[int] = Query(None, ge=1, le=365),
    ) -> JSONResponse:
        try:
            return JSONResponse(await state.leaderboard(limit=limit, days=days))
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.post("/api/transactions/{signature}/status")
    async def api_set_status(signature: str, payload: Dict[str, str] = Body(...)) -> JSONResponse:
        try:
            status = TransactionStatus(str(payload.get("status", "")).upper())
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="Unknown status") from exc
        try:
            return JSONResponse(await state.set_status(signature, status))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Transaction not found") from exc
        except InvalidStatusTransition as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/api/webhooks/test")
    async def api_webhook_test(payload: Dict[str, str] = Body(...)) -> JSONResponse:
        url = payload.get("url")
        if not url:
            raise HTTPException(status_code=422, detail="url is required")
        delivered = await state.ctx.notifier.send_test(url)
        return JSONResponse({"url": url, "delivered": delivered})

    @app.get("/api/watcher/status")
    async def api_watcher_status() -> JSONResponse:
        return JSONResponse(state.watcher_status())

    async def _forward_events(websocket: WebSocket, subscriber: Subscriber) -> None:
        while subscriber.connected:
            event = await subscriber.queue.get()
            await websocket.send_json(event.to_dict())

    async def _handle_commands(websocket: WebSocket, subscriber: Subscriber) -> None:
        while True:
            message = await websocket.receive_json()
            action = message.get("action") if isinstance(message, dict) else None
            topic = message.get("topic") if isinstance(message, dict) else None
            if action not in {"subscribe", "unsubscribe"} or not isinstance(topic, str):
                await websocket.send_json({"type": "error", "detail": "expected {action, topic}"})
                continue
            if action == "subscribe":
                try:
                    await state.join(subscriber, topic)
                except ValueError as exc:
                    await websocket.send_json({"type": "error", "detail": str(exc)})
                    continue
            else:
                await state.leave(subscriber, topic)
            await websocket.send_json({"type": f"{action}d", "topic": topic})

    @app.websocket("/ws")
    async def ws_session(websocket: WebSocket) -> None:
        wallet = websocket.query_params.get("wallet")
        if wallet and not is_valid_address(wallet):
            await websocket.close(code=4400)
            return
        await websocket.accept()
        subscriber = await state.open_session(wallet)
        tasks = [
            asyncio.create_task(_forward_events(websocket, subscriber)),
            asyncio.create_task(_handle_commands(websocket, subscriber)),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    _LOGGER.warning("Websocket session ended with error: %s", exc)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await state.close_session(subscriber)

    return app


__all__ = ["create_dashboard_app"]
