"""
Provider Orchestrator Service
==============================
Port: 8012

┌──────────────────────────────────────────────────────────────────────────┐
│                        Provider Orchestrator                             │
│                                                                          │
│  ┌──────────┐  ┌────────────┐  ┌────────────┐  ┌─────────────────────┐  │
│  │ API Layer│─►│ Dispatcher │─►│ Adapters   │─►│ External providers  │  │
│  │ (FastAPI)│  │ (fan-out)  │  │ (httpx)    │  │ + local fallback    │  │
│  └──────────┘  └────────────┘  └────────────┘  └─────────────────────┘  │
│       │             │                                                    │
│       ▼             ▼                                                    │
│  ┌──────────┐  ┌────────────┐  ┌────────────┐  ┌─────────────────────┐  │
│  │ Metrics  │  │ Scorer /   │  │ Registry + │  │ Decision Engine     │  │
│  │ Collector│  │ Blender    │  │ Ledger + CB│  │ + Learning Adjuster │  │
│  └──────────┘  └────────────┘  └────────────┘  └─────────────────────┘  │
└──────────────────────────────────────────────────────────────────────────┘
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .config import PROVIDERS, load_config, validate_providers
from .healing import routine_for
from .models import HealthResponse, HealthStatus, ReadingRequest, ReadingResult
from .service import ReadingOrchestrator, build_orchestrator

# ── Environment ──────────────────────────────────────────────────
backend_root = Path(__file__).parent.parent
load_dotenv(dotenv_path=backend_root / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("provider_orchestrator")


# ══════════════════════════════════════════════════════════════════
#  LIFESPAN: Initialize all subsystems
# ══════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: Config → Provider validation → Services → Decision loop
    Shutdown: Stop loop → Close HTTP client
    """
    config = load_config()
    providers = validate_providers(PROVIDERS)   # ConfigurationError is fatal here
    logger.info(f"✅ {len(providers)} providers configured: {', '.join(providers)}")

    orchestrator = build_orchestrator(config, providers)
    await orchestrator.start()
    app.state.orchestrator = orchestrator
    logger.info("🚀 Provider orchestrator ready on port 8012")

    yield

    await orchestrator.stop()
    logger.info("Provider orchestrator shut down cleanly")


# ══════════════════════════════════════════════════════════════════
#  FastAPI App
# ══════════════════════════════════════════════════════════════════

app = FastAPI(
    title="Provider Orchestrator",
    version="1.0.0",
    description="Fan-out inference orchestration with circuit breakers and a self-adjusting health loop",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator() -> ReadingOrchestrator:
    return app.state.orchestrator


# ══════════════════════════════════════════════════════════════════
#  ROUTES: Readings
# ══════════════════════════════════════════════════════════════════

@app.get("/")
async def root():
    return {
        "service": "Provider Orchestrator",
        "version": "1.0.0",
        "port": 8012,
        "features": [
            "parallel-fan-out",
            "circuit-breakers",
            "usage-ledger",
            "response-blending",
            "decision-engine",
            "threshold-learning",
        ],
    }


@app.post("/reading", response_model=ReadingResult)
async def create_reading(req: ReadingRequest):
    """Fan the input out to eligible providers and return the scored result."""
    return await _orchestrator().request_reading(
        req.input, deadline_s=req.deadline_s, capability=req.capability
    )


# ══════════════════════════════════════════════════════════════════
#  ROUTES: Health & Decisions
# ══════════════════════════════════════════════════════════════════

@app.get("/health", response_model=HealthResponse)
async def health():
    orchestrator = _orchestrator()
    providers = orchestrator.registry.all_status()
    usable = any(p["state"] == "active" and not p["breaker_open"] for p in providers.values())
    return HealthResponse(
        status="healthy" if usable else "degraded",
        providers=providers,
        uptime_seconds=orchestrator.metrics.uptime_seconds,
        metrics_summary=orchestrator.metrics.health_summary(),
    )


@app.get("/health/status", response_model=HealthStatus)
async def health_status():
    return _orchestrator().get_health_status()


@app.post("/healing/{name}")
async def force_healing(name: str):
    """Run a healing routine now (admin action)."""
    orchestrator = _orchestrator()
    routine = routine_for(name)
    if routine not in orchestrator.engine.healing:
        raise HTTPException(404, f"Unknown healing action '{name}'")
    ok = await orchestrator.force_healing_action(routine)
    return {"status": "ok" if ok else "failed", "action": routine, "success": ok}


@app.get("/decisions")
async def get_decisions(limit: int = Query(20, ge=1, le=200)):
    """Most recent decisions of the health loop, oldest first."""
    decisions = _orchestrator().engine.get_decision_history(limit)
    return {
        "count": len(decisions),
        "decisions": [d.model_dump(mode="json") for d in decisions],
        "learning": _orchestrator().engine.model.to_dict(),
    }


# ══════════════════════════════════════════════════════════════════
#  ROUTES: Observability & Admin
# ══════════════════════════════════════════════════════════════════

@app.get("/providers")
async def get_providers():
    """Provider registry with state, budget utilization and breaker state."""
    return _orchestrator().registry.all_status()


@app.get("/circuit-breakers")
async def get_circuit_breakers():
    """Current state of all circuit breakers."""
    return _orchestrator().registry.breakers.all_status()


@app.post("/circuit-breakers/{name}/reset")
async def reset_circuit_breaker(name: str):
    """Manually reset a circuit breaker (admin action)."""
    orchestrator = _orchestrator()
    if orchestrator.registry.get(name) is None:
        raise HTTPException(404, f"Unknown provider '{name}'")
    breaker = orchestrator.registry.breakers.get(name)
    breaker.reset()
    return {"status": "ok", "provider": name, "new_state": breaker.state.value}


@app.get("/metrics")
async def get_metrics():
    """Full metrics dashboard."""
    return _orchestrator().metrics.summary()


# ══════════════════════════════════════════════════════════════════
#  Run Server
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "provider_orchestrator.main:app",
        host="0.0.0.0",
        port=8012,
        log_level="info",
    )
