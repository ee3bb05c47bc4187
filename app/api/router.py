from fastapi import APIRouter

from app.api.routes.health import router as health_router
from app.api.routes.prompts import router as prompts_router
from app.api.routes.simulations import router as simulations_router
from app.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes used by the simulation frontend and the voice provider.
api_router.include_router(webhooks_router)
api_router.include_router(simulations_router)
api_router.include_router(prompts_router)

v1_router.include_router(webhooks_router)
v1_router.include_router(simulations_router)
v1_router.include_router(prompts_router)
api_router.include_router(v1_router)
