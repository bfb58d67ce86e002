"""HTTP API for the resilience service (aiohttp).

All routes live under ``ServiceConfig.api_base``. Responses are
``{"message": ..., **payload}``; failures are ``{"message", "error"}`` with the
status code carried by the raised ``ResilienceError``.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable

from aiohttp import web

from .config import ServiceConfig
from .errors import ResilienceError, ValidationError
from .models import NetworkStatus
from .service import ResilienceService

logger = logging.getLogger("fieldops.server")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

FAILURE_MESSAGES = {
    "network_failure": "Failed to record network failure",
    "power_failure": "Failed to record power failure",
    "offline_maps": "Failed to get offline maps",
    "offline_maps_download": "Failed to initiate map download",
    "sms_configure": "Failed to configure SMS fallback",
    "sms_pod": "Failed to send SMS POD",
    "ussd_pod": "Failed to process USSD POD",
    "sync_buffer": "Failed to add to local buffer",
    "sync_status": "Failed to get sync queue status",
    "sync_process": "Failed to process delayed sync",
    "network_status_get": "Failed to get network status",
    "network_status_update": "Failed to update network status",
    "resilience_config_get": "Failed to get resilience config",
    "resilience_config_update": "Failed to update resilience config",
    "stats": "Failed to get stats",
}


# --- helpers ---

def _ok(message: str, **payload: Any) -> web.Response:
    return web.json_response({"message": message, **payload})


async def _body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:  # JSONDecodeError, UnicodeDecodeError
        raise ValidationError("request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _device_id(request: web.Request, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("deviceId is required")
    request["device_id"] = value
    return value


def _required_str(body: dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} is required")
    return value


def _service(request: web.Request) -> ResilienceService:
    return request.app["service"]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ResilienceError as exc:
        route = request.match_info.route.name or ""
        level = logging.ERROR if exc.status >= 500 else logging.WARNING
        logger.log(level, "%s failed (device=%s): %s: %s",
                   route, request.get("device_id"), type(exc).__name__, exc)
        return web.json_response(
            {"message": FAILURE_MESSAGES.get(route, "Request failed"), "error": str(exc)},
            status=exc.status,
        )
    except Exception as exc:
        route = request.match_info.route.name or ""
        logger.exception("%s crashed (device=%s)", route, request.get("device_id"))
        return web.json_response(
            {"message": FAILURE_MESSAGES.get(route, "Request failed"), "error": str(exc)},
            status=500,
        )


# --- failures ---

async def handle_network_failure(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    event = _service(request).failures.record_network_failure(
        body.get("duration"), body.get("affectedOperations"), device_id,
    )
    return _ok("Network failure recorded", event=event.to_dict(), fallbackActivated=event.fallback_used)


async def handle_power_failure(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    event = _service(request).failures.record_power_failure(
        body.get("batteryLevel"), device_id, body.get("criticalOperations"),
    )
    return _ok("Power failure recorded", event=event.to_dict(),
               autoShutdownTriggered=event.auto_shutdown_triggered)


# --- offline maps ---

async def handle_offline_maps(request: web.Request) -> web.Response:
    maps = _service(request).maps.list(
        region=request.query.get("region"), province=request.query.get("province"),
    )
    return _ok("Offline maps retrieved",
               maps=[m.to_dict() for m in maps],
               totalPackages=len(maps),
               totalSize=sum(m.package_size_mb for m in maps))


async def handle_offline_map_download(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    info = _service(request).maps.initiate_download(_required_str(body, "mapId"), device_id)
    return _ok("Map download initiated", downloadInfo=info, estimatedTime=info["estimatedDownloadTime"])


# --- SMS / USSD ---

async def handle_sms_configure(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    cfg = _service(request).fallback.configure_sms(body.get("phoneNumber"), body.get("provider"), device_id)
    return _ok("SMS fallback configured", config=cfg.to_dict(), availableCommands=cfg.commands)


async def handle_sms_pod(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    result = await _service(request).fallback.send_sms_pod(
        _required_str(body, "trackingNumber"),
        _required_str(body, "deliveryStatus"),
        device_id,
        _required_str(body, "recipientPhone"),
    )
    return _ok("SMS POD sent", result=result,
               creditsUsed=result["creditsUsed"], remainingCredits=result["remainingCredits"])


async def handle_ussd_pod(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    command = body.get("command", "")
    if not isinstance(command, str):
        raise ValidationError("command must be a string")
    reply = _service(request).fallback.process_ussd(
        _required_str(body, "sessionId"), command, _required_str(body, "trackingNumber"), device_id,
    )
    return _ok("USSD POD processed",
               response={"success": True, "response": reply.response, "nextMenu": reply.next_menu},
               nextMenu=reply.next_menu)


# --- local buffer & delayed sync ---

async def handle_sync_buffer(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    payload = body["payload"] if "payload" in body else body.get("data")
    item, position = await _service(request).buffer.enqueue(
        device_id, body.get("type"), payload, body.get("priority", 0),
    )
    return _ok("Item added to local buffer",
               bufferedItem={**item.to_dict(), "queuePosition": position},
               queuePosition=position)


async def handle_sync_status(request: web.Request) -> web.Response:
    device_id = _device_id(request, request.match_info["deviceId"])
    svc = _service(request)
    stats = svc.buffer.stats(device_id)
    network = svc.network.peek(device_id) or NetworkStatus()
    return _ok("Sync queue status retrieved",
               status={"stats": stats.to_dict(), "networkStatus": network.to_dict()},
               networkStatus=network.to_dict())


async def handle_sync_process(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    force = body.get("force", False)
    if not isinstance(force, bool):
        raise ValidationError("force must be a boolean")
    result = await _service(request).sync.process_sync(device_id, force=force)
    return _ok("Delayed sync processed", result=result.to_dict(), syncStats=result.sync_stats.to_dict())


# --- network status ---

async def handle_network_status_get(request: web.Request) -> web.Response:
    device_id = _device_id(request, request.match_info["deviceId"])
    status = _service(request).network.get_status(device_id)
    return _ok("Network status retrieved", networkStatus=status.to_dict())


async def handle_network_status_update(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.pop("deviceId", None))
    partial = body["networkStatus"] if "networkStatus" in body else body
    status, recs = _service(request).network.update_status(device_id, partial)
    return _ok("Network status updated",
               status={**status.to_dict(), "recommendations": recs},
               recommendations=recs)


# --- resilience config ---

async def handle_resilience_config_get(request: web.Request) -> web.Response:
    device_id = _device_id(request, request.match_info["deviceId"])
    cfg = _service(request).configs.get(device_id)
    return _ok("Resilience config retrieved", config=cfg.to_dict())


async def handle_resilience_config_update(request: web.Request) -> web.Response:
    body = await _body(request)
    device_id = _device_id(request, body.get("deviceId"))
    cfg = _service(request).configs.update(device_id, body.get("config"))
    return _ok("Resilience config updated", config=cfg.to_dict())


async def handle_stats(request: web.Request) -> web.Response:
    return _ok("Stats retrieved", stats=_service(request).fleet_stats())


# --- app ---

async def start_background_tasks(app: web.Application) -> None:
    svc: ResilienceService = app["service"]
    if svc.config.auto_sync_enabled:
        app["auto_sync"] = asyncio.create_task(svc.auto_sync.run())


async def cleanup_background_tasks(app: web.Application) -> None:
    task = app.get("auto_sync")
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    app["service"].close()


def create_app(config: ServiceConfig, service: ResilienceService | None = None) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app["config"] = config
    app["service"] = service or ResilienceService(config)

    base = config.api_base.rstrip("/")
    r = app.router
    r.add_post(f"{base}/network-failure", handle_network_failure, name="network_failure")
    r.add_post(f"{base}/power-failure", handle_power_failure, name="power_failure")
    r.add_get(f"{base}/offline-maps", handle_offline_maps, name="offline_maps")
    r.add_post(f"{base}/offline-maps/download", handle_offline_map_download, name="offline_maps_download")
    r.add_post(f"{base}/sms/configure", handle_sms_configure, name="sms_configure")
    r.add_post(f"{base}/sms/pod", handle_sms_pod, name="sms_pod")
    r.add_post(f"{base}/ussd/pod", handle_ussd_pod, name="ussd_pod")
    r.add_post(f"{base}/sync/buffer", handle_sync_buffer, name="sync_buffer")
    r.add_get(f"{base}/sync/status/{{deviceId}}", handle_sync_status, name="sync_status")
    r.add_post(f"{base}/sync/process", handle_sync_process, name="sync_process")
    r.add_get(f"{base}/network/status/{{deviceId}}", handle_network_status_get, name="network_status_get")
    r.add_post(f"{base}/network/status", handle_network_status_update, name="network_status_update")
    r.add_get(f"{base}/resilience/config/{{deviceId}}", handle_resilience_config_get,
              name="resilience_config_get")
    r.add_post(f"{base}/resilience/config", handle_resilience_config_update, name="resilience_config_update")
    r.add_get(f"{base}/stats", handle_stats, name="stats")

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)
    return app


def setup_logging(cfg: ServiceConfig) -> None:
    """Daily rotating file log plus console."""
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    fh = TimedRotatingFileHandler(
        log_dir / "resilience.log",
        when="midnight",
        backupCount=cfg.log_retention_days,
        utc=True,
    )
    fh.setFormatter(fmt)
    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)

    root = logging.getLogger("fieldops")
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    root.addHandler(fh)
    root.addHandler(ch)


def main() -> None:
    cfg = ServiceConfig.load()
    setup_logging(cfg)
    logger.info("Resilience API on %s:%d%s (store: %s)",
                cfg.host, cfg.port, cfg.api_base, cfg.db_path or "memory")
    web.run_app(create_app(cfg), host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()
