"""
FastAPI application for TLS Endpoint Monitor.
"""

import asyncio
import ipaddress
import os
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError

from tls_endpoint_monitor import __version__
from tls_endpoint_monitor.config import Config
from tls_endpoint_monitor.errors import (
    CertificateNotFound,
    InvalidScheduleExpression,
    InvalidTarget,
    MonitorError,
    ScanAlreadyRunning,
    ScanNotFound,
)
from tls_endpoint_monitor.logger import get_logger
from tls_endpoint_monitor.metrics import MetricsCollector
from tls_endpoint_monitor.models import CertificateRecord
from tls_endpoint_monitor.service import MonitorService
from tls_endpoint_monitor.targets import parse_ports, split_hosts

PortsField = Union[List[Union[int, str]], int, str, None]


class ScanRequest(BaseModel):
    """Body of ``POST /scan``. Hosts and ports may be lists or free text."""

    hosts: Union[List[str], str]
    ports: PortsField = None


class ScheduleRequest(BaseModel):
    """Body of ``POST /schedules`` and ``PUT /schedules/{id}``."""

    name: str
    hosts: Union[List[str], str]
    ports: PortsField = None
    frequency: str = "daily"
    active: bool = True

    def to_definition(self, default_ports: List[int], scan_id: Optional[int] = None) -> Dict[str, Any]:
        hosts = split_hosts(self.hosts) if isinstance(self.hosts, str) else self.hosts
        ports = default_ports if self.ports is None else parse_ports(self.ports)
        return {
            "id": scan_id,
            "name": self.name,
            "hosts": hosts,
            "ports": ports,
            "frequency": self.frequency,
            "active": self.active,
        }


def _dump_records(records: List[CertificateRecord]) -> List[Dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]


def _http_error(error: Exception) -> HTTPException:
    """Translate a service error into the matching HTTP error."""
    if isinstance(error, (ScanNotFound, CertificateNotFound)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ScanAlreadyRunning):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (InvalidScheduleExpression, InvalidTarget, ValidationError)):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=f"Request failed: {error}")


def create_app(
    service: MonitorService,
    metrics: MetricsCollector,
    config: Config,
    lifespan_override: Optional[Any] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    The default lifespan starts the service (store and scheduler) on the
    serving event loop and stops it on shutdown.

    Args:
        service: Monitor service facade
        metrics: Metrics collector instance
        config: Configuration instance

    Returns:
        Configured FastAPI application
    """
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        await service.start()
        logger.info("TLS Endpoint Monitor API started")
        try:
            yield
        except asyncio.CancelledError:
            # Expected when the server is interrupted
            pass
        finally:
            logger.info("TLS Endpoint Monitor API shutting down")
            await service.stop()

    app = FastAPI(
        title="TLS Endpoint Monitor",
        description="TLS endpoint certificate scanning and expiry monitoring",
        version=__version__,
        lifespan=lifespan_override or lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def ip_whitelist_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Middleware to enforce IP whitelisting."""
        if not config.enable_ip_whitelist:
            return await call_next(request)

        client_ip = request.client.host if request.client else None

        # Client IP is not available in some test transports
        if not client_ip:
            logger.warning("Unable to determine client IP address, allowing request")
            return await call_next(request)

        is_allowed = False
        for allowed_ip in config.allowed_ips:
            try:
                if "/" in allowed_ip:
                    network = ipaddress.ip_network(allowed_ip, strict=False)
                    if ipaddress.ip_address(client_ip) in network:
                        is_allowed = True
                        break
                elif client_ip == allowed_ip:
                    is_allowed = True
                    break
            except ValueError as e:
                logger.warning(f"Invalid IP configuration '{allowed_ip}': {e}")
                continue

        if not is_allowed:
            logger.warning(f"Access denied for IP address: {client_ip}")
            return JSONResponse(
                status_code=403,
                content={
                    "error": "Access forbidden",
                    "message": "Your IP address is not allowed to access this service",
                    "client_ip": client_ip,
                },
            )

        logger.debug(f"Access granted for IP address: {client_ip}")
        return await call_next(request)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def get_metrics() -> PlainTextResponse:
        try:
            metrics_data: str = metrics.get_metrics()
            return PlainTextResponse(content=metrics_data, media_type=metrics.get_content_type())
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate metrics") from e

    @app.get("/healthz", response_class=JSONResponse)
    async def get_health() -> JSONResponse:
        try:
            service_health = await service.get_health_status()
            metrics_health = metrics.get_registry_status()
            system_health = _get_system_health(config)

            health_status = {
                **service_health,
                **metrics_health,
                **system_health,
                "status": "healthy",
                "version": __version__,
            }
            return JSONResponse(content=health_status)
        except Exception as e:
            logger.error(f"Failed to get health status: {e}")
            return JSONResponse(content={"status": "error", "error": str(e)}, status_code=500)

    @app.get("/certificates", response_class=JSONResponse)
    async def list_certificates() -> JSONResponse:
        records = await service.list_certificates()
        return JSONResponse(content=_dump_records(records))

    @app.delete("/certificates/{host}/{port}", response_class=JSONResponse)
    async def delete_certificate(host: str, port: int) -> JSONResponse:
        try:
            await service.delete_certificate(host, port)
        except MonitorError as e:
            raise _http_error(e) from e
        return JSONResponse(content={"message": f"Certificate record for {host}:{port} deleted"})

    @app.post("/scan", response_class=JSONResponse)
    async def trigger_scan(body: ScanRequest) -> JSONResponse:
        logger.info("Manual scan triggered via API")
        try:
            records = await service.run_batch_scan(body.hosts, body.ports)
        except MonitorError as e:
            raise _http_error(e) from e
        except Exception as e:
            logger.error(f"Manual scan failed: {e}")
            raise HTTPException(status_code=500, detail=f"Scan failed: {e}") from e
        return JSONResponse(content=_dump_records(records))

    @app.get("/schedules", response_class=JSONResponse)
    async def list_schedules() -> JSONResponse:
        scans = await service.list_scans()
        return JSONResponse(content=[scan.model_dump(mode="json") for scan in scans])

    @app.post("/schedules", response_class=JSONResponse, status_code=201)
    async def create_schedule(body: ScheduleRequest) -> JSONResponse:
        try:
            scan = await service.create_or_update_scan(body.to_definition(config.default_ports))
        except (MonitorError, ValidationError) as e:
            raise _http_error(e) from e
        return JSONResponse(content=scan.model_dump(mode="json"), status_code=201)

    @app.get("/schedules/jobs", response_class=JSONResponse)
    async def list_active_jobs() -> JSONResponse:
        return JSONResponse(content=service.scheduler.active_jobs())

    @app.get("/schedules/{scan_id}", response_class=JSONResponse)
    async def get_schedule(scan_id: int) -> JSONResponse:
        try:
            scan = await service.get_scan(scan_id)
        except MonitorError as e:
            raise _http_error(e) from e
        return JSONResponse(content=scan.model_dump(mode="json"))

    @app.put("/schedules/{scan_id}", response_class=JSONResponse)
    async def update_schedule(scan_id: int, body: ScheduleRequest) -> JSONResponse:
        try:
            scan = await service.create_or_update_scan(
                body.to_definition(config.default_ports, scan_id)
            )
        except (MonitorError, ValidationError) as e:
            raise _http_error(e) from e
        return JSONResponse(content=scan.model_dump(mode="json"))

    @app.delete("/schedules/{scan_id}", response_class=JSONResponse)
    async def delete_schedule(scan_id: int) -> JSONResponse:
        try:
            await service.delete_scan(scan_id)
        except MonitorError as e:
            raise _http_error(e) from e
        return JSONResponse(content={"message": f"Scheduled scan {scan_id} deleted"})

    @app.post("/schedules/{scan_id}/run", response_class=JSONResponse)
    async def run_schedule(scan_id: int) -> JSONResponse:
        logger.info(f"Immediate run of scheduled scan {scan_id} triggered via API")
        try:
            records = await service.run_scan_now(scan_id)
        except MonitorError as e:
            raise _http_error(e) from e
        return JSONResponse(content=_dump_records(records))

    @app.get("/config", response_class=JSONResponse)
    async def get_config() -> JSONResponse:
        try:
            config_dict: Dict[str, Any] = config.model_dump()

            if config_dict.get("tls_key"):
                config_dict["tls_key"] = "***REDACTED***"
            config_dict["allowed_ips"] = [
                f"***REDACTED*** ({len(config_dict['allowed_ips'])} IPs/networks)"
            ]
            # Show only the file name, not the full path
            config_dict["data_file"] = f"***/{Path(config_dict['data_file']).name}"

            return JSONResponse(content=config_dict)
        except Exception as e:
            logger.error(f"Failed to get configuration: {e}")
            raise HTTPException(status_code=500, detail="Failed to get configuration") from e

    return app


def _get_system_health(config: Config) -> Dict[str, Any]:
    health_data: Dict[str, Any] = {}
    try:
        log_file_writable = True
        if config.log_file:
            log_dir = os.path.dirname(config.log_file)
            log_file_writable = os.access(log_dir if log_dir else ".", os.W_OK)
        health_data["log_file_writable"] = log_file_writable

        data_dir = os.path.dirname(os.path.abspath(config.data_file))
        health_data["data_dir_writable"] = os.access(data_dir, os.W_OK)
        if os.path.exists(data_dir):
            usage = shutil.disk_usage(data_dir)
            health_data["diskspace"] = {
                "status": "ok" if usage.free > 1024**3 else "warning",
                "total": usage.total,
                "free": usage.free,
                "percent_used": round((usage.used / usage.total) * 100, 2),
            }
    except Exception as e:
        health_data["system_health_error"] = str(e)

    return health_data
