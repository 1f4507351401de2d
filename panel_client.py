"""
Pterodactyl panel client for Bot Builder.
Injects the panel credentials into every outbound call and routes each one
through the retry client. Callers receive raw HttpResponse objects.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import (
    PTERODACTYL_API_URL, PTERODACTYL_API_KEY, PTERODACTYL_CLIENT_API_KEY,
    PTERODACTYL_EGG_ID, PTERODACTYL_NEST_ID, PTERODACTYL_LOCATION_ID, PTERODACTYL_DOCKER_IMAGE,
    SERVER_MEMORY_MB, SERVER_DISK_MB, SERVER_CPU_PERCENT,
    PROVISION_TIMEOUT, STATUS_TIMEOUT, UPLOAD_TIMEOUT, ACCOUNT_TIMEOUT,
)
from diagnostics import RequestTrace
from http_retry import HttpResponse, RetryPolicy, Sleep, fetch, send_with_retry

logger = logging.getLogger(__name__)

USER_AGENT = "DiscordAI-Bot/1.0"
BOT_MAIN_FILE = "bot.js"

STARTUP_COMMAND = (
    'if [[ -d .git ]] && [[ {{AUTO_UPDATE}} == "1" ]]; then git pull; fi; '
    'if [[ ! -z ${NODE_PACKAGES} ]]; then /usr/local/bin/npm install ${NODE_PACKAGES}; fi; '
    'if [[ ! -z ${UNNODE_PACKAGES} ]]; then /usr/local/bin/npm uninstall ${UNNODE_PACKAGES}; fi; '
    'if [ -f /home/container/package.json ]; then /usr/local/bin/npm install; fi; '
    'if [[ "${MAIN_FILE}" == "*.js" ]]; then /usr/local/bin/node "/home/container/${MAIN_FILE}" ${NODE_ARGS}; '
    'else /usr/local/bin/ts-node --esm "/home/container/${MAIN_FILE}" ${NODE_ARGS}; fi'
)

PROVISION_POLICY = RetryPolicy(timeout=PROVISION_TIMEOUT, max_delay=10.0)
STATUS_POLICY = RetryPolicy(timeout=STATUS_TIMEOUT, max_delay=5.0)
UPLOAD_POLICY = RetryPolicy(timeout=UPLOAD_TIMEOUT, max_delay=10.0)
ACCOUNT_POLICY = RetryPolicy(timeout=ACCOUNT_TIMEOUT, max_delay=10.0)


def vendor_error_details(data: Any) -> List[str]:
    """Collect the `errors[].detail` messages of a panel error body."""
    if not isinstance(data, dict):
        return []
    details = []
    for item in data.get("errors") or []:
        if isinstance(item, dict) and item.get("detail"):
            details.append(str(item["detail"]))
        elif isinstance(item, str):
            details.append(item)
    return details


def vendor_error_message(data: Any, response: HttpResponse) -> str:
    """Best human-readable message from a panel error body."""
    details = vendor_error_details(data)
    if details:
        return details[0]
    if isinstance(data, dict):
        for key in ("message", "error"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    return f"HTTP {response.status}: {response.reason}".rstrip(": ")


class PanelClient:
    """Talks to the panel's application API (admin key) and client API (client key)."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_url: str = PTERODACTYL_API_URL,
        api_key: Optional[str] = PTERODACTYL_API_KEY,
        client_api_key: Optional[str] = PTERODACTYL_CLIENT_API_KEY,
        egg_id: Optional[str] = PTERODACTYL_EGG_ID,
        nest_id: Optional[str] = PTERODACTYL_NEST_ID,
        location_id: Optional[str] = PTERODACTYL_LOCATION_ID,
        docker_image: str = PTERODACTYL_DOCKER_IMAGE,
        sleep: Sleep = asyncio.sleep,
    ):
        self.session = session
        self.api_url = api_url.rstrip("/")
        self._api_key = (api_key or "").strip()
        self._client_api_key = (client_api_key or "").strip()
        self.egg_id = egg_id
        self.nest_id = nest_id
        self.location_id = location_id
        self.docker_image = docker_image
        self._sleep = sleep
        logger.info(f"PanelClient initialized for {self.api_url or '<unset>'}")

    def _headers(self, client_api: bool = False, json_body: bool = False) -> Dict[str, str]:
        key = self._client_api_key if client_api else self._api_key
        headers = {
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            "Cache-Control": "no-cache",
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _send(self, method: str, path: str, policy: RetryPolicy, trace: Optional[RequestTrace],
                    label: str, client_api: bool = False, **kwargs) -> HttpResponse:
        url = f"{self.api_url}{path}"
        headers = self._headers(client_api=client_api, json_body="json" in kwargs)

        async def operation() -> HttpResponse:
            return await fetch(self.session, method, url, headers=headers, **kwargs)

        if trace:
            trace.log("Outgoing Request", {"method": method, "url": url, "headers": headers})
        response = await send_with_retry(operation, policy, trace=trace, label=label, sleep=self._sleep)
        if trace:
            trace.log("Raw Response", {"target": label, "status": response.status,
                                       "statusText": response.reason,
                                       "body": response.text[:1000]},
                      "info" if response.ok else "warn")
        return response

    def build_server_payload(self, name: str, description: str, owner_account_id: str) -> Dict[str, Any]:
        """Full application-API body for a Node.js Discord bot server."""
        return {
            "name": name,
            "user": int(owner_account_id),
            "docker_image": self.docker_image,
            "egg": int(self.egg_id),
            "startup": STARTUP_COMMAND,
            "environment": {
                "SERVER_SCRIPT": BOT_MAIN_FILE,
                "DISCORD_TOKEN": "{{DISCORD_TOKEN}}",
                "STARTUP_FILE": BOT_MAIN_FILE,
                "REPO_URL": "",
                "USER_UPLOAD": "1",
                "AUTO_UPDATE": "0",
                "MAIN_FILE": BOT_MAIN_FILE,
            },
            "limits": {
                "memory": SERVER_MEMORY_MB,
                "swap": 0,
                "disk": SERVER_DISK_MB,
                "io": 500,
                "cpu": SERVER_CPU_PERCENT,
            },
            "feature_limits": {"databases": 0, "backups": 0, "allocations": 1},
            "deploy": {
                "locations": [int(self.location_id)],
                "dedicated_ip": False,
                "port_range": [],
            },
            "start_on_completion": True,
            "skip_scripts": False,
            "oom_disabled": False,
            "description": description or "Discord bot server",
            "nest": int(self.nest_id),
        }

    async def create_server(self, name: str, description: str, owner_account_id: str,
                            trace: Optional[RequestTrace] = None) -> HttpResponse:
        payload = self.build_server_payload(name, description, owner_account_id)
        return await self._send("POST", "/application/servers", PROVISION_POLICY, trace,
                                "create-server", json=payload)

    async def get_server_resources(self, server_id: str,
                                   trace: Optional[RequestTrace] = None) -> HttpResponse:
        return await self._send("GET", f"/application/servers/{server_id}/resources", STATUS_POLICY,
                                trace, "server-status")

    async def delete_server(self, server_id: str, trace: Optional[RequestTrace] = None) -> HttpResponse:
        return await self._send("DELETE", f"/application/servers/{server_id}", PROVISION_POLICY,
                                trace, "delete-server")

    async def find_users_by_email(self, email: str, trace: Optional[RequestTrace] = None) -> HttpResponse:
        return await self._send("GET", "/application/users", ACCOUNT_POLICY, trace, "find-user",
                                params={"filter[email]": email})

    async def create_user(self, payload: Dict[str, Any],
                          trace: Optional[RequestTrace] = None) -> HttpResponse:
        return await self._send("POST", "/application/users", ACCOUNT_POLICY, trace, "create-user",
                                json=payload)

    async def write_file(self, server_id: str, path: str, content: str,
                         trace: Optional[RequestTrace] = None) -> HttpResponse:
        return await self._send("POST", f"/client/servers/{server_id}/files/write", UPLOAD_POLICY,
                                trace, f"write-file:{path}", client_api=True,
                                json={"file": path, "content": content})

    async def get_client_resources(self, server_id: str,
                                   trace: Optional[RequestTrace] = None) -> HttpResponse:
        return await self._send("GET", f"/client/servers/{server_id}/resources", STATUS_POLICY,
                                trace, "server-resources", client_api=True)
