#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import psutil

from privacypay.api.logging_config import get_logger

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()


async def check_rpc_health(rpc_url: str, timeout: float = 5.0) -> Dict[str, Any]:
    """
    Check upstream Solana RPC connectivity

    Args:
        rpc_url: Solana RPC endpoint URL (never echoed back: it may carry an API key)

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
            )
            response.raise_for_status()
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
        }
    except httpx.HTTPError as e:
        logger.error(f"RPC health check failed: {e.__class__.__name__}")
        return {
            "status": "unhealthy",
            "error": e.__class__.__name__,
        }


def check_keystore_health(keystore_path: str) -> Dict[str, Any]:
    """
    Check that the device key store location is writable

    Returns:
        dict with status and error (if any)
    """
    directory = Path(keystore_path).parent
    if directory.exists() and os.access(directory, os.W_OK):
        return {"status": "healthy"}
    if not directory.exists() and os.access(directory.parent, os.W_OK):
        return {"status": "healthy", "note": "created on first key"}
    return {"status": "unhealthy", "error": "key store directory not writable"}


def get_system_metrics() -> Dict[str, Any]:
    """
    Get system resource metrics

    Returns:
        dict with CPU, memory, and disk usage
    """
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        return {
            "cpu": {
                "usage_percent": round(psutil.cpu_percent(interval=0.1), 2)
            },
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
                "total_mb": round(memory.total / (1024 * 1024), 2)
            },
            "disk": {
                "usage_percent": round(disk.percent, 2),
                "used_gb": round(disk.used / (1024 * 1024 * 1024), 2),
                "total_gb": round(disk.total / (1024 * 1024 * 1024), 2)
            }
        }
    except (psutil.Error, OSError) as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    """
    Get API uptime

    Returns:
        dict with uptime_seconds and uptime_formatted
    """
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60
    uptime_days = uptime_hours / 24

    if uptime_days >= 1:
        uptime_str = f"{int(uptime_days)}d {int(uptime_hours % 24)}h"
    elif uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {
        "uptime_seconds": round(uptime_seconds, 2),
        "uptime_formatted": uptime_str
    }


async def comprehensive_health_check(
    rpc_url: Optional[str],
    keystore_path: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Perform comprehensive health check of all services

    Args:
        rpc_url: upstream RPC URL to check (None when the proxy is unconfigured)
        keystore_path: device key store file, if this process holds one

    Returns:
        dict with overall status and component statuses
    """
    checks: Dict[str, Any] = {}

    if rpc_url:
        checks["rpc"] = await check_rpc_health(rpc_url)
    else:
        checks["rpc"] = {"status": "not_configured"}

    if keystore_path:
        checks["keystore"] = check_keystore_health(keystore_path)
    else:
        checks["keystore"] = {"status": "disabled"}

    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    component_statuses = [checks["rpc"].get("status"), checks["keystore"].get("status")]
    if all(s in ["healthy", "disabled", "not_configured"] for s in component_statuses):
        overall_status = "healthy"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "checks": checks
    }


async def readiness_check(rpc_url: Optional[str]) -> bool:
    """
    Ready when the upstream RPC answers. An unconfigured proxy is never ready.
    """
    if not rpc_url:
        return False
    rpc_check = await check_rpc_health(rpc_url)
    return rpc_check["status"] == "healthy"
