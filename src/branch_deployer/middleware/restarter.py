"""Middleware that restarts the deployed version through the HTTP restart proxy.

The proxy contract:

- ``GET /update`` reloads the proxy's routing table, answers ``{"updated": bool}``
- ``GET /restart?app=<name>&version=<version>`` (re)starts one application
  version, answers ``{"started": bool, "error": "..."}``
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import structlog

from branch_deployer.core.exceptions import MiddlewareError, PostSwapError
from branch_deployer.middleware.base import Done

logger = structlog.get_logger()


class RestartNotifier:
    """Registers an after-swap restart of the deployed branch."""

    def __init__(
        self,
        app_name: str,
        base_url: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_name = app_name
        self.base_url = base_url
        self._transport = transport

    async def __call__(self, branch: str, target_dir: Path, data: Any) -> Done:
        if not self.base_url:
            raise MiddlewareError("RESTARTER: Proxy port not defined", code="restarter")

        async def restart_after_swap() -> None:
            await self.restart(branch)

        return Done(after_swap=restart_after_swap)

    async def restart(self, version: str) -> None:
        """Reload the proxy routing table, then (re)start the version."""
        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport) as client:
            update = await self._get_json(client, "/update", version)
            if not update.get("updated"):
                logger.error("RESTARTER: Proxy failed to update its routing table", version=version)
                raise PostSwapError(
                    f"RESTARTER: Proxy did not update before restarting {version}", code="proxy_update"
                )

            result = await self._get_json(
                client, "/restart", version, params={"app": self.app_name, "version": version}
            )
            if not result.get("started"):
                error = result.get("error")
                logger.error("RESTARTER: Failed to restart", version=version, error=error)
                raise PostSwapError(
                    f"RESTARTER: Failed to restart {version}" + (f" ({error})" if error else ""),
                    code="proxy_restart",
                )

        logger.info("RESTARTER: Successfully restarted", app=self.app_name, version=version)

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        path: str,
        version: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = await client.get(path, params=params)
            payload = resp.json()
        except httpx.HTTPError as exc:
            logger.error("RESTARTER: Proxy request failed", path=path, version=version, error=str(exc))
            raise PostSwapError(f"RESTARTER: Proxy request {path} failed: {exc}", code="proxy_unreachable") from exc
        except ValueError as exc:
            raise PostSwapError(
                f"RESTARTER: Proxy answered {path} with invalid JSON (HTTP {resp.status_code})",
                code="proxy_bad_response",
            ) from exc

        if not isinstance(payload, dict):
            raise PostSwapError(
                f"RESTARTER: Proxy answered {path} with unexpected payload (HTTP {resp.status_code})",
                code="proxy_bad_response",
            )
        return payload
