"""
HTTP relay module for Bot Builder.
Exposes provisioning, status, upload, chat, account and deployment
operations over JSON endpoints. Credentials stay server-side; every
response carries the request id and the redacted diagnostic log.
"""
import asyncio
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil
from aiohttp import web

from account_store import AccountStore
from chat_client import ChatClient, estimate_prompt_cost, find_dropped_commands
from config import DEFAULT_MODEL, RELAY_HOST, RELAY_PORT
from deployment import DeploymentService
from diagnostics import RequestTrace
from errors import (
    AccountExistsError, BotBuilderError, DeploymentNotFoundError, InsufficientTokensError,
    UserNotFoundError, ValidationError,
)
from file_deployer import FileDeployer, build_bot_files
from installation_poller import InstallationPoller
from provisioner import DeploymentRequest, ServerProvisioner

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.Response]]

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Request-ID",
    "Access-Control-Max-Age": "86400",
}


def require_server_uuid(value: Optional[str]) -> str:
    if not value:
        raise ValidationError("Server ID is required")
    if not UUID_RE.match(value):
        raise ValidationError("Invalid server ID format")
    return value


def require_fields(body: Dict[str, Any], *names: str):
    missing = [name for name in names if body.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing)


class RelayServer:
    """aiohttp application serving the Bot Builder API."""

    def __init__(
        self,
        provisioner: ServerProvisioner,
        poller: InstallationPoller,
        deployer: FileDeployer,
        chat: ChatClient,
        accounts: AccountStore,
        deployments: DeploymentService,
        host: str = RELAY_HOST,
        port: int = RELAY_PORT,
    ):
        self.provisioner = provisioner
        self.poller = poller
        self.deployer = deployer
        self.chat = chat
        self.accounts = accounts
        self.deployments = deployments
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self.port: Optional[int] = None
        self._started = time.time()
        self._start_lock = asyncio.Lock()
        self._allowed: Dict[str, List[str]] = {}

        self.app = web.Application(middlewares=[self._envelope_middleware])
        self._route("/api/servers", {"POST": self._handle_create_server, "DELETE": self._handle_delete_server})
        self._route("/api/servers/status", {"GET": self._handle_server_status})
        self._route("/api/files", {"POST": self._handle_upload_files})
        self._route("/api/users", {"POST": self._handle_create_user})
        self._route("/api/users/{user_id}", {"GET": self._handle_get_user})
        self._route("/api/chat", {"POST": self._handle_chat})
        self._route("/api/projects", {"GET": self._handle_list_projects, "POST": self._handle_create_project})
        self._route("/api/projects/{project_id}", {"GET": self._handle_get_project,
                                                   "PUT": self._handle_update_project,
                                                   "DELETE": self._handle_delete_project})
        self._route("/api/deployments", {"GET": self._handle_list_deployments,
                                         "POST": self._handle_start_deployment})
        self._route("/api/deployments/{deployment_id}", {"GET": self._handle_get_deployment})
        self._route("/healthz", {"GET": self._handle_health})

    # -------- Plumbing -------- #
    def _route(self, path: str, handlers: Dict[str, Handler]):
        allowed = sorted(handlers) + ["OPTIONS"]
        self._allowed[path] = allowed

        async def dispatch(request: web.Request) -> web.Response:
            handler = handlers.get(request.method)
            if handler is None:
                trace: RequestTrace = request["trace"]
                trace.log("Method Not Allowed", {"method": request.method, "path": request.path}, "warn")
                return self._respond(request, {
                    "error": "METHOD_NOT_ALLOWED",
                    "message": f"Method {request.method} not allowed",
                    "allowedMethods": allowed,
                }, 405, success=False)
            return await handler(request)

        self.app.router.add_route("*", path, dispatch)

    def _respond(self, request: web.Request, payload: Dict[str, Any], status: int = 200,
                 success: bool = True) -> web.Response:
        trace: RequestTrace = request["trace"]
        body = {"requestId": trace.request_id, "success": success, **payload, "logs": trace.entries}
        return web.json_response(body, status=status, dumps=lambda data: json.dumps(data, default=str))

    @web.middleware
    async def _envelope_middleware(self, request: web.Request, handler):
        trace = RequestTrace(request_id=request.headers.get("X-Request-ID"), source="relay")
        request["trace"] = trace
        trace.log("Incoming Request", {"method": request.method, "path": request.path,
                                       "query": dict(request.query)})
        try:
            if request.method == "OPTIONS":
                response = web.Response(status=204)
            else:
                response = await handler(request)
        except BotBuilderError as e:
            level = "error" if e.http_status >= 500 else "warn"
            trace.log("Request Failed", {"error": e.code, "message": e.message}, level)
            response = self._respond(request, e.to_dict(), e.http_status, success=False)
        except web.HTTPException as e:
            response = self._respond(request, {"error": e.reason, "message": e.text}, e.status, success=False)
        except Exception as e:
            logger.error(f"RelayServer error handling {request.method} {request.path}: {str(e)}", exc_info=True)
            trace.log("Unhandled Error", {"message": str(e)}, "error")
            response = self._respond(request, {"error": "INTERNAL_ERROR",
                                               "message": "internal server error"}, 500, success=False)

        response.headers.update(CORS_HEADERS)
        response.headers["Access-Control-Allow-Methods"] = ", ".join(self._allowed_methods(request))
        response.headers["X-Request-ID"] = trace.request_id
        return response

    def _allowed_methods(self, request: web.Request):
        resource = request.match_info.route.resource
        return self._allowed.get(resource.canonical if resource else "", ["OPTIONS"])

    async def _read_json(self, request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            raise ValidationError("Request body is required")
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Invalid JSON in request body")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    def _require_user(self, user_id: Any):
        user = self.accounts.get_user(str(user_id)) if user_id not in (None, "") else None
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    # -------- Servers -------- #
    async def _handle_create_server(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        require_fields(body, "name", "userId")
        server = await self.provisioner.provision_server(
            body["name"], body.get("description", ""), str(body["userId"]), request["trace"].child("pterodactyl"))
        return self._respond(request, {"data": server.to_dict()}, 201)

    async def _handle_delete_server(self, request: web.Request) -> web.Response:
        server_id = require_server_uuid(request.query.get("serverId"))
        deleted = await self.provisioner.delete_server(server_id, request["trace"].child("pterodactyl"))
        return self._respond(request, {"data": {"serverId": server_id, "deleted": deleted}})

    async def _handle_server_status(self, request: web.Request) -> web.Response:
        server_id = require_server_uuid(request.query.get("serverId"))
        status = await self.poller.check_server_status(server_id, request["trace"].child("server-status"))
        return self._respond(request, {"data": status.to_dict()})

    async def _handle_upload_files(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        summary = await self.deployer.upload_files(body.get("serverId"), body.get("files"),
                                                   request["trace"].child("upload-files"))
        return self._respond(request, summary.to_dict(), 200 if summary.success else 500,
                             success=summary.success)

    # -------- Users -------- #
    async def _handle_create_user(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        require_fields(body, "email", "username", "password", "firstName", "lastName")
        if self.accounts.find_user_by_email(body["email"]):
            raise AccountExistsError("A user with this email already exists")
        panel_user_id = await self.provisioner.provision_account(
            body["email"], body["username"], body["password"], body["firstName"], body["lastName"],
            request["trace"].child("pterodactyl-user"))
        user = await self.accounts.create_user(body["email"], body["username"], panel_user_id)
        return self._respond(request, {"data": user.to_dict()}, 201)

    async def _handle_get_user(self, request: web.Request) -> web.Response:
        user = await self.accounts.touch_login(request.match_info["user_id"])
        return self._respond(request, {"data": {
            **user.to_dict(),
            "role": self.accounts.get_role(user.id),
            "maxProjects": self.accounts.max_projects(user.id),
        }})

    # -------- Chat -------- #
    async def _handle_chat(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        trace: RequestTrace = request["trace"]
        user = self._require_user(body.get("userId"))
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ValidationError("Messages must be a non-empty array")
        model = body.get("model") or DEFAULT_MODEL

        prompt = "\n".join(str(m.get("content", "")) for m in messages if isinstance(m, dict))
        estimate = estimate_prompt_cost(prompt, model)
        balance = self.accounts.get_token_balance(user.id)
        trace.log("Token Check", {"userId": user.id, "estimate": estimate, "tokens": balance})
        if balance < estimate:
            raise InsufficientTokensError(
                f"Insufficient tokens: about {estimate} required, {balance} available",
                {"required": estimate, "available": balance})

        completion = await self.chat.get_completion(messages, model, trace.child("openai"))
        remaining = await self.accounts.debit_tokens(user.id, completion.estimated_cost, floor_at_zero=True)
        dropped = find_dropped_commands(body.get("currentCode"), completion.code)
        if dropped:
            trace.log("Commands Dropped", {"commands": dropped}, "warn")
        return self._respond(request, {"data": {
            **completion.to_dict(),
            "tokens": remaining,
            "droppedCommands": dropped,
        }})

    # -------- Projects -------- #
    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        user = self._require_user(request.query.get("userId"))
        projects = self.accounts.list_projects(user.id)
        return self._respond(request, {"data": [p.to_dict() for p in projects],
                                       "maxProjects": self.accounts.max_projects(user.id)})

    async def _handle_create_project(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        require_fields(body, "userId", "name")
        project = await self.accounts.create_project(str(body["userId"]), body["name"],
                                                     body.get("description", ""), body.get("code", ""))
        return self._respond(request, {"data": project.to_dict()}, 201)

    async def _handle_get_project(self, request: web.Request) -> web.Response:
        user = self._require_user(request.query.get("userId"))
        project = self.accounts.get_project(user.id, request.match_info["project_id"])
        return self._respond(request, {"data": project.to_dict()})

    async def _handle_update_project(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        user = self._require_user(body.pop("userId", None))
        project = await self.accounts.update_project(user.id, request.match_info["project_id"], **body)
        return self._respond(request, {"data": project.to_dict()})

    async def _handle_delete_project(self, request: web.Request) -> web.Response:
        user = self._require_user(request.query.get("userId"))
        await self.accounts.delete_project(user.id, request.match_info["project_id"])
        return self._respond(request, {"data": {"deleted": True}})

    # -------- Deployments -------- #
    async def _handle_start_deployment(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        require_fields(body, "userId", "name")
        user = self._require_user(body["userId"])
        panel_user_id = body.get("panelUserId") or user.panel_user_id
        if not panel_user_id:
            raise ValidationError("User has no hosting account; create one before deploying")

        files = body.get("files")
        if files is None:
            if not body.get("code"):
                raise ValidationError("Either code or files is required")
            files = build_bot_files(body["code"], body.get("botToken"))

        deployment_request = DeploymentRequest(
            desired_name=body["name"],
            description=body.get("description", ""),
            owner_account_id=str(panel_user_id),
        )
        trace = RequestTrace(request_id=request["trace"].request_id, source="deployment")
        record = self.deployments.start(deployment_request, files, user_id=user.id, trace=trace)
        request["trace"].log("Deployment Started", {"deploymentId": record.id, "userId": user.id})
        return self._respond(request, {"data": record.to_dict(include_logs=False)}, 202)

    async def _handle_list_deployments(self, request: web.Request) -> web.Response:
        user = self._require_user(request.query.get("userId"))
        records = self.deployments.list_for_user(user.id)
        return self._respond(request, {"data": [r.to_dict(include_logs=False) for r in records]})

    async def _handle_get_deployment(self, request: web.Request) -> web.Response:
        deployment_id = request.match_info["deployment_id"]
        record = self.deployments.get(deployment_id)
        if not record:
            raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
        return self._respond(request, {"data": record.to_dict()})

    # -------- Health -------- #
    async def _handle_health(self, request: web.Request) -> web.Response:
        memory = psutil.Process().memory_info()
        return self._respond(request, {
            "status": "ok",
            "uptime": int(time.time() - self._started),
            "memory": {"rss": memory.rss, "vms": memory.vms},
        })

    # -------- Lifecycle -------- #
    async def start(self) -> Optional[int]:
        """Start listening; returns the bound port."""
        async with self._start_lock:
            if self._runner and self._site:
                return self.port
            self._runner = web.AppRunner(self.app, access_log=None)
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, host=self._host, port=self._port)
            await self._site.start()
            sockets = getattr(self._site._server, "sockets", None)  # type: ignore[attr-defined]
            if sockets:
                self.port = sockets[0].getsockname()[1]
            logger.info(f"Relay server listening on {self._host}:{self.port}")
            return self.port

    async def stop(self):
        async with self._start_lock:
            if self._site:
                await self._site.stop()
                self._site = None
            if self._runner:
                await self._runner.cleanup()
                self._runner = None
            self.port = None
