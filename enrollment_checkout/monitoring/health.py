"""
Health checks for readiness/liveness probes.

Checks:
- Order store connectivity
- View cache backend connectivity
- Payment gateway reachability
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

Probe = Callable[[], Awaitable[None]]


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the checkout dependencies.

    Each dependency is probed through its own ``ping``; a probe that raises
    marks the dependency unhealthy.
    """

    def __init__(
        self,
        store: Probe,
        cache: Probe,
        gateway: Optional[Probe] = None,
    ) -> None:
        self._probes: Dict[str, Probe] = {"store": store, "cache": cache}
        if gateway is not None:
            self._probes["gateway"] = gateway

    async def check(self, service: str) -> Dict[str, Any]:
        """
        Probe one dependency.

        Raises:
            HealthCheckError: If the probe fails
        """
        try:
            await self._probes[service]()
        except Exception as e:
            logger.error("health_check_failed", service=service, error=str(e))
            raise HealthCheckError(f"{service} health check failed: {e}") from e
        return {"status": "healthy", "service": service}

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True
        for service in self._probes:
            try:
                checks[service] = await self.check(service)
            except HealthCheckError as e:
                checks[service] = {"status": "unhealthy", "service": service, "error": str(e)}
                all_healthy = False
        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; dependencies are not checked."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
