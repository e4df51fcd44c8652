from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for the orchestrator itself.

    Returns the deployment mode, loaded pipelines and per-target rollout state.
    """
    settings = request.app.state.settings
    engine = request.app.state.engine
    registry = engine.controller.registry

    targets = {}
    for name in registry.names():
        target = registry.get(name)
        targets[name] = {
            "revision": target.revision,
            "rollout_state": target.rollout_state,
            "health": target.health,
            "locked": registry.lock_for(name).locked(),
        }

    return {
        "status": "ok",
        "deployment_mode": settings.deployment_mode,
        "pipelines": sorted(engine.pipelines),
        "targets": targets,
        "pending_notifications": engine.notifier.pending,
    }
