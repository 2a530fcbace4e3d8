"""
Health checks: liveness, readiness, startup and a metrics snapshot.
Response bodies follow the draft "Health Check Response Format for HTTP APIs".
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from typing import Callable, Dict, Any, Optional
import os
import time
import redis
from datetime import datetime
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)

class HealthStatus(str, Enum):
    """Health status values"""
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"

# (fail below, warn below) thresholds
DISK_FREE_GB = (1, 5)
MEMORY_AVAILABLE_MB = (100, 500)

def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"

def _component(component_type: str, status_val: HealthStatus, **fields) -> Dict[str, Any]:
    return {"status": status_val, "componentType": component_type, "time": _now(), **fields}

def _graded(value: float, thresholds) -> HealthStatus:
    fail_below, warn_below = thresholds
    if value < fail_below:
        return HealthStatus.FAIL
    if value < warn_below:
        return HealthStatus.WARN
    return HealthStatus.PASS

class ServiceHealth:
    """
    Health endpoints for one service.

    ``engine`` is the service's own SQLAlchemy engine; ``config_check`` is an
    optional callable returning a list of missing configuration keys.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine: Optional[Engine] = None,
        config_check: Optional[Callable[[], list]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine = engine
        self.config_check = config_check
        self.start_time = time.time()
        self.checks_performed = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Lightweight liveness check for load balancers"""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now()
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """Dependency checks; 503 only when one of them fails outright"""
            checks = self.readiness_checks()
            overall_status = self.overall_status(checks)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE if overall_status == HealthStatus.FAIL else status.HTTP_200_OK,
                content={
                    "status": overall_status,
                    "version": self.version,
                    "serviceId": self.service_name,
                    "checks": checks,
                    "timestamp": _now()
                },
            )

        @router.get("/health/startup")
        async def startup() -> JSONResponse:
            checks = {"database:migrations": self._check_migrations()}
            if self.overall_status(checks) == HealthStatus.FAIL:
                return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                    content={"status": "starting", "checks": checks})
            return JSONResponse(content={"status": "started", "checks": checks})

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            return {
                "service": self.service_name,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "memory_rss_bytes": process.memory_info().rss,
                "num_threads": process.num_threads(),
            }

        return router

    def readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        checks = {"database:connectivity": self._check_database()}
        if os.getenv("REDIS_URL"):
            checks["cache:connectivity"] = self._check_redis()
        if self.config_check is not None:
            checks["payment_gateway:configuration"] = self._check_configuration()
        checks["system:resources"] = self._check_resources()
        return checks

    def _check_database(self) -> Dict[str, Any]:
        if self.engine is None:
            return _component("datastore", HealthStatus.WARN, output="No engine configured")
        try:
            start_time = time.time()
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return _component("datastore", HealthStatus.PASS,
                              observedValue=f"{(time.time() - start_time) * 1000:.2f}", observedUnit="ms")
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return _component("datastore", HealthStatus.FAIL, output=str(e))

    def _check_redis(self) -> Dict[str, Any]:
        try:
            redis.from_url(os.getenv("REDIS_URL"), socket_connect_timeout=1).ping()
            return _component("cache", HealthStatus.PASS)
        except Exception as e:
            # settlement never reads the cache
            return _component("cache", HealthStatus.WARN, output=str(e))

    def _check_configuration(self) -> Dict[str, Any]:
        missing = self.config_check()
        if missing:
            return _component("configuration", HealthStatus.FAIL, output=f"Missing configuration: {', '.join(missing)}")
        return _component("configuration", HealthStatus.PASS)

    def _check_resources(self) -> Dict[str, Any]:
        try:
            free_gb = psutil.disk_usage('/').free / (1024 ** 3)
            available_mb = psutil.virtual_memory().available / (1024 ** 2)
        except Exception as e:
            return _component("system", HealthStatus.WARN, output=str(e))
        status_val = self.overall_status({
            "disk": {"status": _graded(free_gb, DISK_FREE_GB)},
            "memory": {"status": _graded(available_mb, MEMORY_AVAILABLE_MB)},
        })
        return _component("system", status_val, observedValue={"disk_free_gb": round(free_gb, 2),
                                                                "memory_available_mb": round(available_mb, 2)})

    def _check_migrations(self) -> Dict[str, Any]:
        """Alembic version table present (tables created by create_all only warn)"""
        if self.engine is None:
            return _component("datastore", HealthStatus.WARN)
        try:
            if inspect(self.engine).has_table("alembic_version"):
                return _component("datastore", HealthStatus.PASS)
            return _component("datastore", HealthStatus.WARN, output="Migrations table not found")
        except Exception as e:
            return _component("datastore", HealthStatus.FAIL, output=str(e))

    @staticmethod
    def overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks.values()]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
