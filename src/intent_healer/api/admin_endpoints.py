"""
Administrative endpoints for the healing runtime.

Exposes cache, circuit breaker, budget, registry and metrics state of the
runtime stored on ``app.state.runtime``.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ..services.decision_cache import PERSISTENCE_VERSION
from ..services.healing_runtime import HealingRuntime


logger = logging.getLogger("healer.engine")

router = APIRouter(prefix="/healer", tags=["healer"])


class CacheImportRequest(BaseModel):
    """Request body for importing cached decisions."""
    version: int = PERSISTENCE_VERSION
    entries: List[Dict[str, Any]] = Field(default_factory=list)


class BudgetResetRequest(BaseModel):
    """Request body for resetting budget counters."""
    include_daily_cost: bool = False


def get_runtime(request: Request) -> HealingRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Healing runtime is not initialized")
    return runtime


@router.get("/cache/stats")
async def get_cache_stats(runtime: HealingRuntime = Depends(get_runtime)):
    """Get decision cache size and hit statistics."""
    return {
        "status": "success",
        "enabled": runtime.cache.config.enabled,
        "cache": runtime.cache.stats().to_dict()
    }


@router.post("/cache/clear")
async def clear_cache(runtime: HealingRuntime = Depends(get_runtime)):
    """Drop every cached decision."""
    cleared = runtime.cache.clear()
    logger.info(f"Cache cleared through admin API ({cleared} entries)")
    return {"status": "success", "cleared": cleared}


@router.get("/cache/export")
async def export_cache(runtime: HealingRuntime = Depends(get_runtime)):
    """Export live cache entries in the persistence layout."""
    return {"version": PERSISTENCE_VERSION, "entries": runtime.cache.export_entries()}


@router.post("/cache/import")
async def import_cache(payload: CacheImportRequest, runtime: HealingRuntime = Depends(get_runtime)):
    """Import cache entries previously produced by the export endpoint."""
    if payload.version != PERSISTENCE_VERSION:
        raise HTTPException(status_code=400,
                            detail=f"Unsupported cache layout version: {payload.version}")
    imported = runtime.cache.import_entries(payload.entries)
    return {
        "status": "success",
        "imported": imported,
        "skipped": len(payload.entries) - imported
    }


@router.get("/circuits")
async def get_circuits(runtime: HealingRuntime = Depends(get_runtime)):
    """Get circuit breaker state per provider."""
    return {
        "status": "success",
        "circuits": {name: stats.to_dict() for name, stats in runtime.orchestrator.circuit_stats().items()}
    }


@router.post("/circuits/reset")
async def reset_circuits(runtime: HealingRuntime = Depends(get_runtime)):
    """Close every circuit breaker."""
    runtime.orchestrator.reset_circuits()
    logger.info("Circuit breakers reset through admin API")
    return {"status": "success", "providers": list(runtime.orchestrator.circuit_stats().keys())}


@router.get("/budget")
async def get_budget(runtime: HealingRuntime = Depends(get_runtime)):
    """Get request and spend usage against the configured caps."""
    return {"status": "success", "budget": runtime.orchestrator.budget_status()}


@router.post("/budget/reset")
async def reset_budget(payload: BudgetResetRequest, runtime: HealingRuntime = Depends(get_runtime)):
    runtime.orchestrator.reset_budget(include_daily_cost=payload.include_daily_cost)
    return {"status": "success", "budget": runtime.orchestrator.budget_status()}


@router.get("/registry")
async def get_registry(runtime: HealingRuntime = Depends(get_runtime)):
    """Get pending, deferred and validated heal bookkeeping."""
    registry = runtime.registry
    return {
        "status": "success",
        "stats": registry.stats(),
        "validated": [heal.to_dict() for heal in registry.validated_heals()],
        "deferred": [
            {
                "heal_id": heal.heal_id,
                "run_id": heal.run_id,
                "original": heal.original_locator,
                "replacement": heal.healed_locator,
                "confidence": heal.confidence
            }
            for heal in registry.deferred_heals()
        ]
    }


@router.post("/registry/{heal_id}/promote")
async def promote_deferred_heal(heal_id: str, runtime: HealingRuntime = Depends(get_runtime)):
    """Promote a deferred heal to validated regardless of its confidence."""
    heal = runtime.registry.reconsider(heal_id)
    if heal is None:
        raise HTTPException(status_code=404, detail=f"No deferred heal with id {heal_id}")
    return {"status": "success", "heal": heal.to_dict()}


@router.get("/metrics")
async def get_metrics(format: str = Query("json"), runtime: HealingRuntime = Depends(get_runtime)):
    """Get aggregated healing metrics as JSON or Prometheus text."""
    if format not in ("json", "prometheus"):
        raise HTTPException(status_code=400, detail=f"Unsupported metrics format: {format}")
    if format == "prometheus":
        return PlainTextResponse(runtime.metrics.export_metrics("prometheus"),
                                 media_type="text/plain; version=0.0.4")
    return {
        "timestamp": datetime.now().isoformat(),
        "metrics": asdict(runtime.metrics.get_current_metrics())
    }
