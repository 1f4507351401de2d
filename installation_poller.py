"""
Installation polling module for Bot Builder.
Reads a provisioned server's status and waits until the panel reports it
as installed, suspended or failed.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import aiohttp

from config import (
    INSTALLATION_CHECK_INTERVAL, INSTALLATION_TIMEOUT, INSTALLATION_MAX_BACKOFF,
    MAX_CONSECUTIVE_STATUS_ERRORS,
)
from diagnostics import RequestTrace
from errors import (
    AuthenticationError, BotBuilderError, InstallationTimeoutError, NonRetriableHttpError,
    StatusCheckFailedError, TerminalRemoteStateError,
)
from http_retry import Sleep, parse_json_body
from panel_client import PanelClient, vendor_error_message
from provisioner import extract_attributes

logger = logging.getLogger(__name__)

INSTALLING = "installing"
RUNNING = "running"
SUSPENDED = "suspended"
ERROR = "error"
TERMINAL_FAILURES = (SUSPENDED, ERROR)

_ERROR_STATES = {"error", "install_failed"}


@dataclass
class ServerStatus:
    server_id: str
    status: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"serverId": self.server_id, "status": self.status, "attributes": self.attributes}


def interpret_status(attributes: Dict[str, Any]) -> str:
    """Map raw panel server attributes to installing/running/suspended/error."""
    if attributes.get("status") == "suspended" or attributes.get("is_suspended"):
        return SUSPENDED
    if attributes.get("status") in _ERROR_STATES or attributes.get("state") in _ERROR_STATES:
        return ERROR
    container = attributes.get("container") or {}
    if container.get("installed") not in (1, True):
        return INSTALLING
    return RUNNING


class InstallationPoller:
    """Polls the panel until a server leaves the installing state."""

    def __init__(
        self,
        panel: PanelClient,
        poll_interval: float = INSTALLATION_CHECK_INTERVAL,
        timeout: float = INSTALLATION_TIMEOUT,
        max_backoff: float = INSTALLATION_MAX_BACKOFF,
        max_consecutive_failures: int = MAX_CONSECUTIVE_STATUS_ERRORS,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.panel = panel
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_backoff = max_backoff
        self.max_consecutive_failures = max_consecutive_failures
        self._sleep = sleep
        self._clock = clock

    async def check_server_status(self, server_id: str,
                                  trace: Optional[RequestTrace] = None) -> ServerStatus:
        """
        Read the current status of a server once.

        Args:
            server_id: Identifier returned by the provisioner
            trace: Diagnostic context

        Returns:
            ServerStatus: Interpreted status plus the raw attributes
        """
        trace = trace or RequestTrace(source="server-status")
        response = await self.panel.get_server_resources(server_id, trace)
        if response.status == 401:
            raise AuthenticationError("Invalid or missing API credentials for the hosting panel")
        if response.status == 403:
            raise AuthenticationError("API key does not have sufficient permissions")

        data = parse_json_body(response, "hosting panel")
        if not response.ok:
            message = vendor_error_message(data, response)
            trace.log("API Error", {"serverId": server_id, "status": response.status,
                                    "error": message}, "error")
            raise NonRetriableHttpError(response.status, f"Failed to check server status: {message}")

        attributes = extract_attributes(data)
        status = interpret_status(attributes)
        trace.log("Server Status", {"serverId": server_id, "status": status,
                                    "installed": (attributes.get("container") or {}).get("installed")})
        return ServerStatus(server_id=server_id, status=status, attributes=attributes)

    def _failure_delay(self, failures: int) -> float:
        return min(self.poll_interval * (2 ** failures), self.max_backoff)

    def _timed_out(self, server_id: str, checks: int, elapsed: float,
                   trace: RequestTrace) -> InstallationTimeoutError:
        trace.log("Installation Timeout", {"serverId": server_id, "checks": checks,
                                           "elapsed": round(elapsed, 1)}, "error")
        return InstallationTimeoutError(
            f"Server installation timed out after {self.timeout:g} seconds", {"serverId": server_id})

    async def wait_for_installation(self, server_id: str, trace: Optional[RequestTrace] = None) -> None:
        """
        Block until the server is running.

        Raises:
            TerminalRemoteStateError: The server was suspended or failed to install
            InstallationTimeoutError: The server was still installing at the deadline
            StatusCheckFailedError: Too many consecutive status checks failed
        """
        trace = trace or RequestTrace(source="installation")
        started = self._clock()
        failures = 0
        checks = 0
        last_error: Optional[BaseException] = None

        while True:
            elapsed = self._clock() - started
            if elapsed >= self.timeout:
                raise self._timed_out(server_id, checks, elapsed, trace)

            checks += 1
            try:
                # a slow poll must not outlive the deadline
                result = await asyncio.wait_for(self.check_server_status(server_id, trace),
                                                timeout=self.timeout - elapsed)
            except asyncio.TimeoutError:
                raise self._timed_out(server_id, checks, self._clock() - started, trace) from None
            except AuthenticationError:
                raise
            except (BotBuilderError, aiohttp.ClientError, OSError) as e:
                failures += 1
                last_error = e
                trace.log("Status Check Failed", {"serverId": server_id, "failures": failures,
                                                  "error": str(e)}, "warn")
                if failures >= self.max_consecutive_failures:
                    logger.error(f"Status check for {server_id} failed {failures} times in a row: {e}")
                    raise StatusCheckFailedError(failures, last_error) from e
                delay = self._failure_delay(failures)
            else:
                failures = 0
                if result.status == RUNNING:
                    trace.log("Installation Complete", {"serverId": server_id, "checks": checks})
                    logger.info(f"Server {server_id} finished installing after {checks} checks")
                    return
                if result.status in TERMINAL_FAILURES:
                    trace.log("Installation Failed", {"serverId": server_id, "status": result.status}, "error")
                    raise TerminalRemoteStateError(server_id, result.status)
                delay = self.poll_interval

            remaining = self.timeout - (self._clock() - started)
            await self._sleep(max(0.0, min(delay, remaining)))
