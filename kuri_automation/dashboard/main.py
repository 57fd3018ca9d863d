"""
Dashboard server: read-only HTTP and WebSocket view of the automation agent.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from kuri_automation.core.config import Settings
from kuri_automation.services.automation.context import AutomationContext
from kuri_automation.services.monitoring_service import summarize_metrics
from kuri_automation.services.reporting_service import REPORT_TYPES
from kuri_automation.scheduler.task_scheduler import TaskScheduler
from .connection_manager import ConnectionManager
from .schemas import ClientMessageType, ClientRequest, DashboardMessage, MessageType


logger = structlog.get_logger(__name__)

UPDATE_WINDOW_SECONDS = 300


def _market_metrics(context: AutomationContext, market_address: str, window: Optional[float] = None) -> Dict[str, Any]:
    metrics = context.monitoring.get_market_metrics(market_address)
    if window is not None:
        now = context.clock()
        metrics = [m for m in metrics if now - m.timestamp < window]
    return summarize_metrics(metrics)


def _find_market(context: AutomationContext, market_address: str) -> Optional[str]:
    wanted = market_address.lower()
    for tracked in context.monitoring.tracked_markets():
        if tracked.lower() == wanted:
            return tracked
    return None


def _last_raffle_outcomes(context: AutomationContext) -> Dict[str, str]:
    stats = context.raffles.last_stats
    if stats is None:
        return {}
    return {result.market_address: result.outcome.value for result in stats.results}


async def build_health(context: AutomationContext, scheduler: Optional[TaskScheduler] = None) -> Dict[str, Any]:
    scheduler_health = await scheduler.health_check() if scheduler is not None else None
    system = context.monitoring.get_system_health()
    return {
        "status": "healthy" if system.node_status != "error" else "unhealthy",
        "timestamp": datetime.utcnow().isoformat(),
        "account": context.chain_writer.address,
        "chain_id": context.settings.chain_id,
        "system": system.to_dict(),
        "scheduler": scheduler_health,
        "transactions": {
            "total": len(context.supervisor.get_transactions()),
            "pending": len(context.supervisor.pending()),
        },
    }


def create_dashboard_app(
    context: AutomationContext,
    scheduler: Optional[TaskScheduler] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """Create the dashboard FastAPI application bound to ``context``."""
    settings = settings or context.settings

    app = FastAPI(
        title="Kuri Automation Dashboard",
        description="Operational view of raffle and VRF subscription automation",
        version=settings.app_version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    async def build_updates() -> List[DashboardMessage]:
        markets = {
            market_address: _market_metrics(context, market_address, UPDATE_WINDOW_SECONDS)
            for market_address in context.monitoring.tracked_markets()
        }
        return [
            DashboardMessage(
                type=MessageType.UPDATE,
                data={
                    "health": context.monitoring.get_system_health().to_dict(),
                    "markets": markets,
                    "pending_transactions": len(context.supervisor.pending()),
                }
            )
        ]

    manager = ConnectionManager(update_builder=build_updates, update_interval=settings.dashboard_update_interval)
    app.state.context = context
    app.state.connection_manager = manager

    def on_alert(message: str, severity: str):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if manager.connections:
            loop.create_task(manager.broadcast(
                DashboardMessage(type=MessageType.ALERT, data={"message": message, "severity": severity})
            ))

    context.monitoring.register_alert_callback(on_alert)

    @app.get("/api/health")
    async def health():
        payload = await build_health(context, scheduler)
        payload["connections"] = manager.get_connection_stats()
        return payload

    @app.get("/api/markets")
    async def markets():
        outcomes = _last_raffle_outcomes(context)
        addresses = list(dict.fromkeys(list(context.monitoring.tracked_markets()) + list(outcomes)))
        return [
            {
                "address": market_address,
                "last_raffle_outcome": outcomes.get(market_address),
                "metrics": _market_metrics(context, market_address),
            }
            for market_address in addresses
        ]

    @app.get("/api/transactions")
    async def transactions(status: Optional[str] = None):
        entries = [entry.to_dict() for entry in context.supervisor.get_transactions().values()]
        if status:
            entries = [entry for entry in entries if entry["status"] == status]
        return entries

    @app.get("/api/subscriptions")
    async def subscriptions():
        return {
            "funded": context.store.ids,
            "failed_attempts": context.funding.get_failed_attempts(),
            "max_retries": context.funding.max_retries,
        }

    @app.get("/api/market/{address}/metrics")
    async def market_metrics(address: str):
        market_address = _find_market(context, address)
        if market_address is None:
            raise HTTPException(status_code=404, detail="Market metrics not found")
        return {
            "address": market_address,
            "summary": _market_metrics(context, market_address),
            "transactions": [m.to_dict() for m in context.monitoring.get_market_metrics(market_address)],
        }

    @app.get("/api/reports/{report_type}")
    async def reports(report_type: str, days: int = Query(7, ge=1, le=365)):
        if report_type not in REPORT_TYPES:
            raise HTTPException(status_code=400, detail=f"Unknown report type: {report_type}")
        return context.reporting.get_recent_reports(report_type, days)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        client_id = websocket.query_params.get("client_id") or uuid.uuid4().hex
        connection = await manager.connect(websocket, client_id)

        await connection.send_message(DashboardMessage(
            type=MessageType.INITIAL,
            data={
                "health": context.monitoring.get_system_health().to_dict(),
                "markets": context.monitoring.tracked_markets(),
                "metrics": {
                    market_address: _market_metrics(context, market_address)
                    for market_address in context.monitoring.tracked_markets()
                },
            }
        ))

        try:
            while True:
                raw = await websocket.receive_json()
                try:
                    request = ClientRequest.model_validate(raw)
                except ValidationError:
                    logger.warning("Unknown WebSocket message", client_id=client_id, message=raw)
                    await connection.send_error("INVALID_MESSAGE", "Unknown message type")
                    continue

                if request.type == ClientMessageType.GET_HEALTH:
                    await connection.send_message(DashboardMessage(
                        type=MessageType.HEALTH,
                        data=context.monitoring.get_system_health().to_dict()
                    ))
                elif request.type == ClientMessageType.SUBSCRIBE and request.market:
                    manager.subscribe(client_id, request.market)
                    market_address = _find_market(context, request.market)
                    await connection.send_message(DashboardMessage(
                        type=MessageType.MARKET_METRICS,
                        market=request.market,
                        data=_market_metrics(context, market_address) if market_address else None
                    ))
                elif request.type == ClientMessageType.UNSUBSCRIBE and request.market:
                    manager.unsubscribe(client_id, request.market)
                else:
                    await connection.send_error("INVALID_MESSAGE", "market is required")
        except WebSocketDisconnect:
            pass
        except ValueError as e:
            logger.warning("Malformed WebSocket payload", client_id=client_id, error=str(e))
        finally:
            await manager.disconnect(client_id)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down dashboard server")
        await manager.close()

    return app


def build_dashboard_server(app: FastAPI, settings: Settings) -> uvicorn.Server:
    config = uvicorn.Config(
        app=app,
        host=settings.dashboard_host,
        port=settings.dashboard_port,
        log_level=settings.log_level.lower(),
        access_log=False,
        loop="asyncio"
    )
    return uvicorn.Server(config)
