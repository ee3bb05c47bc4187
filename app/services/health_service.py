from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        # Missing credentials degrade the service; they never fail the probe.
        configured = {
            "webhook_secret": bool(self.settings.elevenlabs_webhook_secret),
            "openai": bool(self.settings.openai_api_key),
            "object_storage": bool(self.settings.s3_bucket),
        }
        return HealthResponse(
            status="ok" if all(configured.values()) else "degraded",
            service=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.app_env,
            simulations_store=self.settings.simulations_store,
            configured=configured,
            timestamp=datetime.now(UTC),
        )
