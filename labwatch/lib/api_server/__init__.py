"""FastAPI server for the laboratory alert service."""

from typing import Dict, List, Any, Optional
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
import structlog

from ... import __version__
from ...models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    InvalidAlertTransition,
    LabwatchConfiguration,
    ReadingStatus,
)
from ...services import AlertProcessor, AlertNotFoundError, AlertStorageError
from ..config import load_default_configuration
from .websocket import ConnectionManager, websocket_endpoint

logger = structlog.get_logger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReadingRequest(_CamelModel):
    """Request model for submitting one sensor reading."""

    room_id: str = Field(..., min_length=1)
    room_name: str = Field(..., min_length=1)
    sensor_id: str = Field(..., min_length=1)
    sensor_type: str = Field(..., min_length=1)
    reading: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("room_id", "room_name", "sensor_id", "sensor_type")
    @classmethod
    def strip_identifier(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class ReadingResponse(BaseModel):
    """Response model for /readings endpoint."""

    room_id: str
    sensor_id: str
    sensor_type: str
    status: ReadingStatus
    decisions: List[Dict[str, Any]]
    errors: List[Dict[str, Any]]
    created: List[Alert]
    escalated: List[Alert]
    resolved: List[Alert]


class AcknowledgeRequest(_CamelModel):
    """Request model for acknowledging an alert."""

    user_id: Optional[str] = None


class NotificationRequest(_CamelModel):
    """Request model for system notifications."""

    message: str
    severity: AlertSeverity = AlertSeverity.INFO
    room_id: Optional[str] = None
    room_name: Optional[str] = None


class AlertsResponse(BaseModel):
    """Response model for /alerts endpoint."""

    total_count: int
    open_count: int
    alerts: List[Alert]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    storage_initialized: bool


# Global reference to the alert processor (singleton)
_alert_processor: Optional[AlertProcessor] = None
_configuration: Optional[LabwatchConfiguration] = None


def set_configuration(configuration: LabwatchConfiguration) -> None:
    """Set the configuration used when the app builds its own processor."""
    global _configuration
    _configuration = configuration


def set_alert_processor(processor: Optional[AlertProcessor]) -> None:
    """Set the global alert processor reference."""
    global _alert_processor
    _alert_processor = processor


def get_alert_processor() -> AlertProcessor:
    """Get the alert processor, building it from configuration on first use."""
    global _alert_processor
    if _alert_processor is None:
        configuration = _configuration or load_default_configuration()
        _alert_processor = AlertProcessor.from_configuration(configuration)
    return _alert_processor


def _decision_dicts(decisions) -> List[Dict[str, Any]]:
    return [decision.model_dump(mode="json") for decision in decisions]


def create_app(processor: Optional[AlertProcessor] = None) -> FastAPI:
    """Create FastAPI application with all routes."""

    connection_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API server starting up")
        alert_processor: AlertProcessor = app.state.processor

        await alert_processor.start()
        alert_processor.add_listener(connection_manager.broadcast_alert)
        connection_manager.status_provider = _status_snapshot
        connection_manager.start_background_tasks()

        yield

        await connection_manager.stop_background_tasks()
        alert_processor.remove_listener(connection_manager.broadcast_alert)
        await alert_processor.stop()
        logger.info("API server shutting down")

    app = FastAPI(
        title="Labwatch Alert API",
        description="Threshold alerting for laboratory room sensors",
        version=__version__,
        lifespan=lifespan
    )
    app.state.processor = processor or get_alert_processor()
    app.state.connection_manager = connection_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    def _processor(request: Request) -> AlertProcessor:
        return request.app.state.processor

    async def _status_snapshot() -> Dict[str, Any]:
        alert_processor: AlertProcessor = app.state.processor
        open_alerts = await alert_processor.storage.list_alerts(status=AlertStatus.OPEN)
        return {
            "open_count": len(open_alerts),
            "open_alerts": [alert.model_dump(mode="json") for alert in open_alerts],
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Simple health check endpoint."""
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(),
            version=__version__,
            storage_initialized=_processor(request).storage.is_initialized
        )

    @app.get("/thresholds")
    async def get_thresholds(request: Request):
        """Configured thresholds and the table derived from them."""
        evaluator = _processor(request).evaluator
        return {
            "thresholds": evaluator.thresholds.model_dump(),
            "rules": evaluator.describe_thresholds()
        }

    @app.post("/readings", response_model=ReadingResponse)
    async def submit_reading(body: ReadingRequest, request: Request):
        """Evaluate a reading and apply the resulting alert changes."""
        try:
            result = await _processor(request).process_reading(
                body.room_id,
                body.room_name,
                body.sensor_id,
                body.sensor_type,
                body.reading
            )
        except AlertStorageError as e:
            logger.error("Error processing reading", sensor_id=body.sensor_id, error=str(e))
            raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

        summary = ReadingResponse(
            room_id=result.room_id,
            sensor_id=result.sensor_id,
            sensor_type=result.sensor_type,
            status=result.status,
            decisions=_decision_dicts(result.decisions),
            errors=_decision_dicts(result.errors),
            created=result.created,
            escalated=result.escalated,
            resolved=result.resolved
        )
        await request.app.state.connection_manager.broadcast_reading({
            "room_id": result.room_id,
            "sensor_id": result.sensor_id,
            "status": result.status.value,
            "actions": [decision.action for decision in result.decisions],
        })
        return summary

    @app.get("/alerts", response_model=AlertsResponse)
    async def get_alerts(request: Request,
                         room_id: Optional[str] = None,
                         status: Optional[AlertStatus] = None,
                         severity: Optional[AlertSeverity] = None,
                         limit: int = Query(100, ge=1, le=1000)):
        """List alerts newest first."""
        storage = _processor(request).storage
        try:
            alerts = await storage.list_alerts(
                room_id=room_id, status=status, severity=severity, limit=limit
            )
            open_count = await storage.count_alerts(AlertStatus.OPEN)
        except AlertStorageError as e:
            logger.error("Error getting alerts", error=str(e))
            raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

        return AlertsResponse(total_count=len(alerts), open_count=open_count, alerts=alerts)

    @app.get("/alerts/{alert_id}", response_model=Alert)
    async def get_alert(alert_id: str, request: Request):
        alert = await _processor(request).storage.get_alert(alert_id)
        if alert is None:
            raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")
        return alert

    @app.post("/alerts/{alert_id}/acknowledge", response_model=Alert)
    async def acknowledge_alert(alert_id: str, request: Request,
                                body: Optional[AcknowledgeRequest] = None):
        """Operator acknowledgement of an alert."""
        user_id = body.user_id if body else None
        try:
            return await _processor(request).acknowledge_alert(alert_id, user_id)
        except AlertNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidAlertTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except AlertStorageError as e:
            logger.error("Error acknowledging alert", alert_id=alert_id, error=str(e))
            raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

    @app.post("/alerts/{alert_id}/resolve", response_model=Alert)
    async def resolve_alert(alert_id: str, request: Request):
        """Operator resolution of an alert."""
        try:
            return await _processor(request).resolve_alert(alert_id)
        except AlertNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidAlertTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except AlertStorageError as e:
            logger.error("Error resolving alert", alert_id=alert_id, error=str(e))
            raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

    @app.post("/notifications", response_model=Alert, status_code=201)
    async def create_notification(body: NotificationRequest, request: Request):
        """Create a system-wide notification alert."""
        try:
            return await _processor(request).create_system_notification(
                body.message,
                severity=body.severity,
                room_id=body.room_id,
                room_name=body.room_name
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except AlertStorageError as e:
            logger.error("Error creating notification", error=str(e))
            raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

    @app.get("/stats")
    async def get_stats(request: Request):
        """Processing, storage and connection statistics."""
        stats = await _processor(request).get_stats()
        stats["websocket_connections"] = len(connection_manager.active_connections)
        return stats

    @app.websocket("/ws")
    async def websocket_route(websocket: WebSocket, client_id: Optional[str] = None):
        await websocket_endpoint(websocket, connection_manager, client_id)

    return app


def run_server(host: str = "127.0.0.1", port: int = 5002, debug: bool = False) -> None:
    """Run the FastAPI server."""
    import uvicorn

    log_level = "debug" if debug else "info"

    logger.info("Starting API server", host=host, port=port, debug=debug)

    uvicorn.run(
        "labwatch.lib.api_server:create_app",
        host=host,
        port=port,
        log_level=log_level,
        factory=True
    )


__all__ = [
    "create_app",
    "run_server",
    "set_alert_processor",
    "get_alert_processor",
    "set_configuration",
    "ReadingRequest",
    "ReadingResponse",
    "AcknowledgeRequest",
    "NotificationRequest",
    "AlertsResponse",
    "HealthResponse",
]
