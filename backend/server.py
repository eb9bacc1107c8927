from fastapi import FastAPI, APIRouter, HTTPException
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dataclasses import replace
from pymongo import MongoClient
import os
import logging
from pathlib import Path
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timedelta, timezone

from common.clock import Clock, SystemClock
from common.config import AlarmSettings, load_settings
from decision.models import ArrivalTarget, TransitLeg
from decision.monitor import MonitoringSession
from fallback.models import PositionSample
from notifications import DeliveryReliabilityManager, DeliveryStatistics, NotificationHistoryService
from notifications.expo_push import ExpoChannelBackend
from notifications.messages import MessageStyle
from notifications.snooze import SnoozePlanner
from providers import ProviderSet, load_providers
from providers.fake_providers import InMemoryHistoryStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

mongo_url = os.environ.get('MONGO_URL')


def connect_history():
    """MongoDB history when configured, otherwise an in-memory store."""
    if not mongo_url:
        return InMemoryHistoryStore()
    try:
        client = MongoClient(mongo_url, serverSelectionTimeoutMS=5000)
        client.admin.command('ping')
        logger.info("MongoDB connection successful")
        return NotificationHistoryService(client[os.environ.get('DB_NAME', 'arrival_alarm')])
    except Exception as e:
        logger.warning(f"MongoDB connection failed: {e}. Keeping history in memory.")
        return InMemoryHistoryStore()


class AlarmRuntime:
    """Services shared by the API; at most one monitoring session at a time."""

    def __init__(self, settings: AlarmSettings, providers: ProviderSet, clock: Clock, history, run_tickers: bool = True):
        self.settings = settings
        self.providers = providers
        self.clock = clock
        self.history = history
        self.run_tickers = run_tickers
        self.statistics = DeliveryStatistics(clock)
        self.delivery = DeliveryReliabilityManager(
            providers.channels,
            clock,
            self.statistics,
            default_config=settings.delivery_config(),
            availability_cache_seconds=settings.availability_cache_seconds,
            retention_hours=settings.record_retention_hours,
        )
        self.session: Optional[MonitoringSession] = None

    def require_session(self) -> MonitoringSession:
        if self.session is None or not self.session.running:
            raise HTTPException(status_code=409, detail="No active monitoring session")
        return self.session

    async def start(self, target: ArrivalTarget) -> MonitoringSession:
        if self.session is not None and self.session.running:
            await self.session.stop()
        self.delivery.cleanup_old_records()
        self.cleanup_history()
        self.session = MonitoringSession(
            self.settings,
            self.clock,
            self.providers.position,
            self.providers.schedule,
            self.delivery,
            message_generator=self.providers.messages,
            history=self.history,
        )
        await self.session.start(target, run_tickers=self.run_tickers)
        return self.session

    def cleanup_history(self) -> int:
        cutoff = self.clock.now() - timedelta(hours=self.settings.record_retention_hours)
        try:
            return self.history.cleanup(cutoff)
        except Exception as e:
            logger.warning(f"History cleanup failed: {e}")
            return 0

    async def shutdown(self):
        if self.session is not None and self.session.running:
            await self.session.stop()
        if isinstance(self.providers.channels, ExpoChannelBackend):
            await self.providers.channels.client.close()


# ==================== Models ====================

class StartMonitoringRequest(BaseModel):
    target_id: str
    station_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    leg_id: Optional[str] = None
    railway_id: Optional[str] = None
    train_number: Optional[str] = None
    scheduled_arrival: Optional[datetime] = None
    approach_event_id: Optional[str] = None


class PositionRequest(BaseModel):
    latitude: float
    longitude: float
    accuracy_meters: float = Field(..., ge=0)
    captured_at: Optional[datetime] = None


class StopCrossingRequest(BaseModel):
    stop_id: str
    stop_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_meters: float = Field(50.0, ge=0)
    confidence: float = Field(0.5, ge=0, le=1)


class ManualConfirmationRequest(BaseModel):
    stop_id: Optional[str] = None
    stop_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_meters: float = Field(50.0, ge=0)
    clear: bool = False


class SnoozePlanRequest(BaseModel):
    alert_id: str
    station_name: str
    snooze_start_stations: int = 3
    current_station_count: int
    style: Optional[MessageStyle] = None


def _aware(value: Optional[datetime], clock: Clock) -> datetime:
    if value is None:
        return clock.now()
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _optional_sample(lat: Optional[float], lon: Optional[float], accuracy: float, clock: Clock) -> Optional[PositionSample]:
    if lat is None or lon is None:
        return None
    return PositionSample(latitude=lat, longitude=lon, accuracy_meters=accuracy, captured_at=clock.now())


# ==================== App ====================

def create_app(
    settings: Optional[AlarmSettings] = None,
    providers: Optional[ProviderSet] = None,
    clock: Optional[Clock] = None,
    history=None,
    run_tickers: bool = True,
) -> FastAPI:
    clock = clock or SystemClock()
    runtime = AlarmRuntime(
        settings or load_settings(),
        providers or load_providers(clock=clock),
        clock,
        history if history is not None else connect_history(),
        run_tickers=run_tickers,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Arrival alarm backend starting (mode={runtime.providers.mode})")
        yield
        await runtime.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.runtime = runtime
    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health():
        return {
            "status": "healthy",
            "mode": runtime.providers.mode,
            "monitoring": runtime.session is not None and runtime.session.running,
        }

    @api_router.post("/monitoring/start")
    async def start_monitoring(request: StartMonitoringRequest):
        leg = None
        if request.leg_id or request.scheduled_arrival:
            leg = TransitLeg(
                leg_id=request.leg_id or request.target_id,
                railway_id=request.railway_id,
                train_number=request.train_number,
                scheduled_arrival=_aware(request.scheduled_arrival, clock) if request.scheduled_arrival else None,
            )
        target = ArrivalTarget(
            target_id=request.target_id,
            station_name=request.station_name,
            latitude=request.latitude,
            longitude=request.longitude,
            leg=leg,
        )
        if request.approach_event_id:
            target = replace(target, approach_event_id=request.approach_event_id)
        session = await runtime.start(target)
        return session.status()

    @api_router.post("/monitoring/stop")
    async def stop_monitoring():
        session = runtime.require_session()
        await session.stop()
        return session.status()

    @api_router.get("/monitoring/status")
    async def monitoring_status():
        if runtime.session is None:
            return {"running": False, "target": None}
        return runtime.session.status()

    @api_router.post("/monitoring/tick")
    async def force_tick():
        """Evaluate immediately instead of waiting for the next tick."""
        session = runtime.require_session()
        decision = await session.tick()
        return decision.to_dict()

    @api_router.post("/positions")
    async def push_position(request: PositionRequest):
        try:
            sample = PositionSample(
                latitude=request.latitude,
                longitude=request.longitude,
                accuracy_meters=request.accuracy_meters,
                captured_at=_aware(request.captured_at, clock),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        push = getattr(runtime.providers.position, "push", None)
        if push is not None:
            push(sample)
        if runtime.session is None or not runtime.session.running:
            return {"accepted": True, "fallback": None}
        runtime.session.fallback.observe(sample)
        return {"accepted": True, "fallback": runtime.session.fallback.evaluate().to_dict()}

    @api_router.post("/stops/crossing")
    async def stop_crossing(request: StopCrossingRequest):
        session = runtime.require_session()
        position = _optional_sample(request.latitude, request.longitude, request.accuracy_meters, clock)
        session.fallback.record_stop_crossing(request.stop_id, request.stop_name, position, request.confidence)
        return session.fallback.snapshot().to_dict()

    @api_router.post("/fallback/manual")
    async def manual_confirmation(request: ManualConfirmationRequest):
        session = runtime.require_session()
        if request.clear:
            session.fallback.clear_manual_confirmation()
            return session.fallback.snapshot().to_dict()
        if not request.stop_id or not request.stop_name:
            raise HTTPException(status_code=400, detail="stop_id and stop_name are required")
        position = _optional_sample(request.latitude, request.longitude, request.accuracy_meters, clock)
        session.fallback.confirm_manual_position(request.stop_id, request.stop_name, position)
        return session.fallback.snapshot().to_dict()

    @api_router.post("/fallback/dismiss")
    async def dismiss_fallback():
        session = runtime.require_session()
        return session.fallback.dismiss().to_dict()

    @api_router.post("/snooze/plan")
    async def plan_snooze(request: SnoozePlanRequest):
        try:
            planned = SnoozePlanner.plan(
                request.alert_id,
                request.station_name,
                request.snooze_start_stations,
                request.current_station_count,
                request.style or runtime.settings.message_style,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return [
            {
                "notification_id": n.notification_id,
                "stations_remaining": n.stations_remaining,
                "fire_after_minutes": n.fire_after_minutes,
                "title": n.title,
                "body": n.body,
                "critical": n.critical,
                "data": n.payload.to_data(),
            }
            for n in planned
        ]

    @api_router.get("/decisions")
    async def recent_decisions(limit: int = 20):
        if runtime.session is None:
            return []
        return [d.to_dict() for d in runtime.session.recent_decisions[-limit:]]

    @api_router.get("/deliveries")
    async def recent_deliveries(hours: float = 24, limit: int = 50):
        since = clock.now() - timedelta(hours=hours)
        try:
            return runtime.history.recent_deliveries(since, limit=limit)
        except Exception as e:
            logger.warning(f"History query failed: {e}")
            raise HTTPException(status_code=503, detail="Delivery history unavailable")

    @api_router.get("/deliveries/statistics")
    async def delivery_statistics():
        return runtime.statistics.to_dict()

    @api_router.get("/deliveries/{notification_id}")
    async def delivery_record(notification_id: str):
        record = runtime.delivery.get_record(notification_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Delivery record not found")
        return record.to_dict()

    app.include_router(api_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()
