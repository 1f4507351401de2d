"""
Server provisioning module for Bot Builder.
Creates hosting panel accounts and bot servers and maps panel responses
onto domain errors.
"""
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from diagnostics import RequestTrace
from errors import (
    AccountExistsError, AuthenticationError, ProvisioningError,
    ServiceUnavailableError, ValidationError,
)
from http_retry import GATEWAY_STATUSES, HttpResponse, ParsedJson, classify_body, parse_json_body
from panel_client import PanelClient, vendor_error_details, vendor_error_message

logger = logging.getLogger(__name__)

SERVER_ID_KEYS = ("uuid", "identifier", "id")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

GATEWAY_CONTEXT = {
    502: "Bad Gateway - The server is temporarily unavailable",
    503: "Service Unavailable - The server is temporarily overloaded",
    504: "Gateway Timeout - The server took too long to respond",
}


@dataclass
class DeploymentRequest:
    desired_name: str
    description: str
    owner_account_id: str


@dataclass
class ProvisionedServer:
    id: str
    name: str
    owner_account_id: str
    status: str = "installing"
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def extract_attributes(data: Any) -> Dict[str, Any]:
    """Return `attributes` from a panel body, with or without a `data` envelope."""
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        data = data["data"]
    if isinstance(data, dict) and isinstance(data.get("attributes"), dict):
        return data["attributes"]
    return {}


def extract_server_id(attributes: Dict[str, Any]) -> Optional[str]:
    for key in SERVER_ID_KEYS:
        value = attributes.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def raise_for_panel_status(response: HttpResponse, action: str, trace: Optional[RequestTrace] = None) -> Any:
    """
    Decode a panel response and raise the matching domain error when it failed.

    Args:
        response: Final response from the retry client
        action: Short description used in error messages
        trace: Diagnostic context

    Returns:
        The decoded JSON body of a successful response
    """
    if response.status in GATEWAY_STATUSES:
        message = f"Unable to reach the hosting panel while trying to {action} ({GATEWAY_CONTEXT[response.status]})"
        if trace:
            trace.log("API Error", {"status": response.status, "message": message}, "error")
        raise ServiceUnavailableError(response.status, message)
    if response.status == 401:
        raise AuthenticationError("Invalid or missing API credentials for the hosting panel")
    if response.status == 403:
        raise AuthenticationError("API key does not have sufficient permissions")

    body = classify_body(response)
    if not isinstance(body, ParsedJson) and trace:
        trace.log("Response Parsing Error", {"status": response.status, "kind": type(body).__name__,
                                             "excerpt": body.excerpt}, "error")
    data = parse_json_body(response, "hosting panel")

    if response.status == 422:
        details = vendor_error_details(data)
        raise ValidationError(
            f"Invalid configuration: {', '.join(details) if details else 'Unknown validation error'}",
            details,
        )
    if not response.ok:
        message = vendor_error_message(data, response)
        if trace:
            trace.log("API Error", {"status": response.status, "error": message}, "error")
        raise ProvisioningError(f"Failed to {action}: {message}", response.status)
    return data


class ServerProvisioner:
    """Creates panel accounts and servers. One server per successful call."""

    def __init__(self, panel: PanelClient):
        self.panel = panel

    async def provision_server(self, name: str, description: str, owner_account_id: str,
                               trace: Optional[RequestTrace] = None) -> ProvisionedServer:
        """
        Create one remote server for a bot.

        Args:
            name: Server name shown in the panel
            description: Free-form description
            owner_account_id: Numeric panel user id that will own the server
            trace: Diagnostic context

        Returns:
            ProvisionedServer: The new server, status "installing"
        """
        trace = trace or RequestTrace(source="pterodactyl")
        if not name or not str(name).strip():
            raise ValidationError("Server name is required")
        if owner_account_id is None or not str(owner_account_id).strip():
            raise ValidationError("User ID is required")
        if not str(owner_account_id).isdigit():
            raise ValidationError("User ID must be a numeric panel account id")

        trace.log("Creating Pterodactyl Server", {"name": name, "description": description,
                                                  "owner": owner_account_id})
        response = await self.panel.create_server(name, description, str(owner_account_id), trace)
        data = raise_for_panel_status(response, "create server", trace)

        attributes = extract_attributes(data)
        server_id = extract_server_id(attributes)
        if not server_id:
            trace.log("Missing ID", {"status": response.status}, "error")
            raise ProvisioningError("Server identifier missing in success response", response.status)

        server = ProvisionedServer(
            id=server_id,
            name=attributes.get("name", name),
            owner_account_id=str(owner_account_id),
            attributes=attributes,
        )
        trace.log("Request Complete", {"serverId": server.id, "name": server.name})
        logger.info(f"Provisioned server {server.id} for panel user {owner_account_id}")
        return server

    async def provision_account(self, email: str, username: str, password: str,
                                first_name: str, last_name: str,
                                trace: Optional[RequestTrace] = None) -> str:
        """
        Create a hosting panel account.

        Returns:
            str: The panel's numeric user id
        """
        trace = trace or RequestTrace(source="pterodactyl-user")
        if not all([email, password, username, first_name, last_name]):
            raise ValidationError(
                "Missing required fields: email, password, username, firstName, and lastName are required")
        if not EMAIL_RE.match(email):
            raise ValidationError("Email address is not valid")
        if len(username) < 3:
            raise ValidationError("Username must be at least 3 characters long")
        if len(password) < 8:
            raise ValidationError("Password must be at least 8 characters long")

        email = email.lower()
        trace.log("Creating Pterodactyl User", {"email": email, "username": username})

        check = await self.panel.find_users_by_email(email, trace)
        existing = raise_for_panel_status(check, "check existing users", trace)
        if isinstance(existing, dict) and existing.get("data"):
            raise AccountExistsError("A hosting account with this email already exists")

        payload = {
            "email": email,
            "username": username.lower(),
            "first_name": first_name,
            "last_name": last_name,
            "password": password,
            "root_admin": False,
            "language": "en",
        }
        response = await self.panel.create_user(payload, trace)
        data = raise_for_panel_status(response, "create hosting account", trace)

        user_id = extract_attributes(data).get("id")
        if user_id in (None, ""):
            trace.log("Missing ID", {"status": response.status}, "error")
            raise ProvisioningError("Account identifier missing in success response", response.status)
        logger.info(f"Created panel account {user_id} for {username}")
        return str(user_id)

    async def delete_server(self, server_id: str, trace: Optional[RequestTrace] = None) -> bool:
        """
        Delete a server.

        Returns:
            bool: True if deleted now, False if it was already gone
        """
        trace = trace or RequestTrace(source="pterodactyl")
        if not server_id:
            raise ValidationError("Server ID is required")
        response = await self.panel.delete_server(server_id, trace)
        if response.status == 404:
            trace.log("Delete Response", {"serverId": server_id, "message": "Server already deleted"})
            return False
        if response.status == 204 or (response.ok and not response.text.strip()):
            trace.log("Delete Response", {"serverId": server_id, "status": response.status})
            return True
        raise_for_panel_status(response, "delete server", trace)
        return True
