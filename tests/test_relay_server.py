import asyncio

import pytest

from account_store import AccountStore
from chat_client import ChatCompletion
from conftest import PANEL_KEY, SERVER_UUID, FakeSleep, json_response, server_attributes
from deployment import DeploymentService
from errors import RateLimitedError
from file_deployer import FileDeployer
from installation_poller import InstallationPoller
from provisioner import ServerProvisioner
from relay_server import RelayServer

CODE = "client.on('messageCreate', (m) => {\n  if (m.content === '!ping') m.reply('pong');\n});"


class FakeChat:
    def __init__(self, cost=40):
        self.cost = cost
        self.calls = []
        self.error = None

    async def get_completion(self, history, model="gpt-3.5-turbo", trace=None):
        self.calls.append((history, model))
        if self.error:
            raise self.error
        return ChatCompletion(content=f"Here's the updated code:\n```javascript\n{CODE}\n```", code=CODE,
                              explanation="Here's the updated code:", estimated_cost=self.cost, model=model)


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def accounts(tmp_path):
    return AccountStore(path=tmp_path / "accounts.json")


@pytest.fixture
def relay(panel, chat, accounts):
    sleep = FakeSleep()
    provisioner = ServerProvisioner(panel)
    poller = InstallationPoller(panel, sleep=sleep)
    deployer = FileDeployer(panel, sleep=sleep)
    return RelayServer(provisioner, poller, deployer, chat, accounts,
                       DeploymentService(provisioner, poller, deployer), host="127.0.0.1", port=0)


@pytest.fixture
async def client(aiohttp_client, relay):
    return await aiohttp_client(relay.app)


@pytest.fixture
async def user(accounts):
    return await accounts.create_user("dev@example.com", "dev", panel_user_id="7")


@pytest.mark.asyncio
async def test_options_returns_204_with_cors(client):
    response = await client.options("/api/servers")

    assert response.status == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in response.headers["Access-Control-Allow-Methods"]
    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_wrong_method_returns_405(client):
    response = await client.get("/api/files")

    assert response.status == 405
    body = await response.json()
    assert body["allowedMethods"] == ["POST", "OPTIONS"]
    assert body["success"] is False


@pytest.mark.asyncio
async def test_create_server_envelope(client, panel):
    panel.queue("create_server", json_response(201, server_attributes(installed=0)))

    response = await client.post("/api/servers", json={"name": "my-bot", "description": "d", "userId": 7},
                                 headers={"X-Request-ID": "req-123"})

    assert response.status == 201
    body = await response.json()
    assert body["requestId"] == "req-123"
    assert response.headers["X-Request-ID"] == "req-123"
    assert body["data"]["id"] == SERVER_UUID
    assert body["data"]["status"] == "installing"
    assert [entry["stage"] for entry in body["logs"]][0] == "Incoming Request"
    assert PANEL_KEY not in await response.text()


@pytest.mark.asyncio
async def test_validation_error_maps_to_400(client):
    response = await client.post("/api/servers", json={"description": "no name"})

    assert response.status == 400
    body = await response.json()
    assert body["error"] == "VALIDATION_ERROR"
    assert body["logs"]


@pytest.mark.asyncio
async def test_invalid_json_maps_to_400(client):
    response = await client.post("/api/servers", data="{broken", headers={"Content-Type": "application/json"})

    assert response.status == 400
    assert (await response.json())["message"] == "Invalid JSON in request body"


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [(401, 401), (503, 503), (422, 400), (500, 500)])
async def test_panel_failures_map_to_status(client, panel, status, expected):
    panel.queue("create_server", json_response(status, {"errors": [{"detail": "nope"}]}))

    response = await client.post("/api/servers", json={"name": "my-bot", "userId": 7})

    assert response.status == expected


@pytest.mark.asyncio
async def test_status_requires_uuid(client, panel):
    response = await client.get("/api/servers/status", params={"serverId": "not-a-uuid"})

    assert response.status == 400
    assert panel.calls == []


@pytest.mark.asyncio
async def test_server_status(client, panel):
    panel.queue("get_server_resources", json_response(200, server_attributes(installed=1)))

    response = await client.get("/api/servers/status", params={"serverId": SERVER_UUID})

    assert response.status == 200
    data = (await response.json())["data"]
    assert data["status"] == "running"
    assert data["attributes"]["uuid"] == SERVER_UUID


@pytest.mark.asyncio
async def test_delete_server(client, panel):
    panel.queue("delete_server", json_response(204))

    response = await client.delete("/api/servers", params={"serverId": SERVER_UUID})

    assert response.status == 200
    assert (await response.json())["data"]["deleted"] is True


@pytest.mark.asyncio
async def test_upload_partial_success_is_200(client, panel):
    def answer(server_id, path, content):
        return json_response(204) if path == "bot.js" else json_response(413)

    panel.queue("write_file", answer)
    files = [{"path": "bot.js", "content": "x"}, {"path": "big.bin", "content": "y"}]

    response = await client.post("/api/files", json={"serverId": SERVER_UUID, "files": files})

    assert response.status == 200
    body = await response.json()
    assert body["summary"] == {"total": 2, "successful": 1, "failed": 1}
    assert body["results"][1]["error"] == "Failed to upload big.bin: File is too large"


@pytest.mark.asyncio
async def test_upload_total_failure_is_500(client, panel):
    panel.queue("write_file", json_response(404))

    response = await client.post("/api/files", json={"serverId": SERVER_UUID,
                                                     "files": [{"path": "bot.js", "content": "x"}]})

    assert response.status == 500
    assert (await response.json())["success"] is False


@pytest.mark.asyncio
async def test_create_user(client, panel, accounts):
    panel.queue("find_users_by_email", json_response(200, {"data": []}))
    panel.queue("create_user", json_response(201, {"attributes": {"id": 12}}))

    response = await client.post("/api/users", json={
        "email": "new@example.com", "username": "newbie", "password": "longpassword",
        "firstName": "New", "lastName": "User",
    })

    assert response.status == 201
    body = await response.json()
    assert body["data"]["panel_user_id"] == "12"
    assert body["data"]["tokens"] == 500
    assert "longpassword" not in await response.text()
    assert accounts.find_user_by_email("new@example.com")


@pytest.mark.asyncio
async def test_create_user_duplicate_is_409(client, user):
    response = await client.post("/api/users", json={
        "email": "dev@example.com", "username": "dev", "password": "longpassword",
        "firstName": "Dev", "lastName": "User",
    })

    assert response.status == 409


@pytest.mark.asyncio
async def test_get_user_profile(client, user):
    response = await client.get(f"/api/users/{user.id}")

    data = (await response.json())["data"]
    assert data["role"] == "user"
    assert data["maxProjects"] == 3


@pytest.mark.asyncio
async def test_chat_debits_tokens(client, chat, accounts, user):
    response = await client.post("/api/chat", json={
        "userId": user.id,
        "messages": [{"type": "user", "content": "add a ping command"}],
        "currentCode": "if (m.content === '!ping') {} if (m.content === '!help') {}",
    })

    assert response.status == 200
    data = (await response.json())["data"]
    assert data["tokens"] == 460
    assert data["droppedCommands"] == ["help"]
    assert accounts.get_token_balance(user.id) == 460


@pytest.mark.asyncio
async def test_chat_rejects_when_balance_too_low(client, chat, accounts, user):
    await accounts.debit_tokens(user.id, 500)

    response = await client.post("/api/chat", json={"userId": user.id,
                                                    "messages": [{"type": "user", "content": "a" * 40}]})

    assert response.status == 403
    assert (await response.json())["error"] == "INSUFFICIENT_TOKENS"
    assert chat.calls == []


@pytest.mark.asyncio
async def test_chat_vendor_error_status(client, chat, user):
    chat.error = RateLimitedError("Rate limit exceeded. Please wait a moment and try again.")

    response = await client.post("/api/chat", json={"userId": user.id,
                                                    "messages": [{"type": "user", "content": "hi"}]})

    assert response.status == 429


@pytest.mark.asyncio
async def test_projects_respect_role_limit(client, user):
    for i in range(3):
        response = await client.post("/api/projects", json={"userId": user.id, "name": f"bot {i}"})
        assert response.status == 201

    response = await client.post("/api/projects", json={"userId": user.id, "name": "bot 4"})
    assert response.status == 403

    listing = await (await client.get("/api/projects", params={"userId": user.id})).json()
    assert len(listing["data"]) == 3
    assert listing["maxProjects"] == 3


@pytest.mark.asyncio
async def test_project_update_and_delete(client, user):
    created = await (await client.post("/api/projects", json={"userId": user.id, "name": "bot"})).json()
    project_id = created["data"]["id"]

    response = await client.put(f"/api/projects/{project_id}", json={"userId": user.id, "code": "// v2"})
    assert (await response.json())["data"]["code"] == "// v2"

    response = await client.delete(f"/api/projects/{project_id}", params={"userId": user.id})
    assert response.status == 200

    response = await client.get(f"/api/projects/{project_id}", params={"userId": user.id})
    assert response.status == 404


@pytest.mark.asyncio
async def test_deployment_lifecycle(client, panel, user):
    panel.queue("create_server", json_response(201, server_attributes(installed=1)))
    panel.queue("get_server_resources", json_response(200, server_attributes(installed=1)))
    panel.queue("write_file", json_response(204))

    response = await client.post("/api/deployments", json={"userId": user.id, "name": "my-bot", "code": CODE,
                                                           "botToken": "discord-secret"})
    assert response.status == 202
    started = (await response.json())["data"]
    assert started["userId"] == user.id

    for _ in range(50):
        body = await (await client.get(f"/api/deployments/{started['id']}")).json()
        if body["data"]["stage"] in ("complete", "error"):
            break
        await asyncio.sleep(0.01)

    assert body["data"]["stage"] == "complete"
    assert body["data"]["serverId"] == SERVER_UUID
    written = {call[2]: call[3] for call in panel.calls if call[0] == "write_file"}
    assert set(written) == {"bot.js", "package.json"}
    assert "discord-secret" not in str(body)


@pytest.mark.asyncio
async def test_unknown_deployment_is_404(client):
    response = await client.get("/api/deployments/nope")
    assert response.status == 404


@pytest.mark.asyncio
async def test_healthz(client):
    response = await client.get("/healthz")

    body = await response.json()
    assert body["status"] == "ok"
    assert body["memory"]["rss"] > 0


@pytest.mark.asyncio
async def test_unexpected_errors_become_500(client, panel):
    panel.queue("create_server", RuntimeError("kaboom"))

    response = await client.post("/api/servers", json={"name": "my-bot", "userId": 7})

    assert response.status == 500
    assert (await response.json())["error"] == "INTERNAL_ERROR"


@pytest.mark.asyncio
async def test_start_and_stop_listen_on_free_port(relay):
    port = await relay.start()
    try:
        assert port
        assert await relay.start() == port
    finally:
        await relay.stop()
    assert relay.port is None


@pytest.mark.asyncio
async def test_non_string_project_name_is_400(client, user):
    response = await client.post("/api/projects", json={"userId": user.id, "name": 123})

    assert response.status == 400
    assert (await response.json())["error"] == "VALIDATION_ERROR"
