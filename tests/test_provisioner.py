import pytest

from conftest import SERVER_UUID, html_response, json_response, server_attributes
from errors import (
    AccountExistsError, AuthenticationError, ExhaustedRetriesError, MalformedResponseError,
    ProvisioningError, ServiceUnavailableError, ValidationError,
)
from provisioner import ServerProvisioner, extract_attributes, extract_server_id


@pytest.fixture
def provisioner(panel):
    return ServerProvisioner(panel)


@pytest.mark.asyncio
async def test_provision_returns_installing_server(provisioner, panel, trace):
    panel.queue("create_server", json_response(201, server_attributes(installed=0)))

    server = await provisioner.provision_server("my-bot", "desc", "7", trace)

    assert server.id == SERVER_UUID
    assert server.status == "installing"
    assert server.owner_account_id == "7"
    assert panel.count("create_server") == 1


@pytest.mark.asyncio
async def test_provision_accepts_data_envelope_and_identifier(provisioner, panel):
    body = {"data": {"attributes": {"identifier": "abc123", "name": "my-bot"}}}
    panel.queue("create_server", json_response(201, body))

    server = await provisioner.provision_server("my-bot", "", "7")

    assert server.id == "abc123"


@pytest.mark.asyncio
@pytest.mark.parametrize("name,owner", [("", "7"), ("   ", "7"), ("bot", ""), ("bot", None), ("bot", "abc")])
async def test_invalid_input_rejected_without_network(provisioner, panel, name, owner):
    with pytest.raises(ValidationError):
        await provisioner.provision_server(name, "", owner)
    assert panel.calls == []


@pytest.mark.asyncio
async def test_401_maps_to_authentication_error(provisioner, panel):
    panel.queue("create_server", json_response(401, {"errors": [{"detail": "Unauthenticated."}]}))

    with pytest.raises(AuthenticationError):
        await provisioner.provision_server("my-bot", "", "7")


@pytest.mark.asyncio
async def test_422_aggregates_vendor_details(provisioner, panel):
    body = {"errors": [{"detail": "The egg field is required."}, {"detail": "Invalid location."}]}
    panel.queue("create_server", json_response(422, body))

    with pytest.raises(ValidationError) as exc_info:
        await provisioner.provision_server("my-bot", "", "7")

    assert exc_info.value.field_errors == ["The egg field is required.", "Invalid location."]
    assert "The egg field is required., Invalid location." in exc_info.value.message


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [502, 503, 504])
async def test_gateway_status_maps_to_service_unavailable(provisioner, panel, status):
    panel.queue("create_server", html_response(status, "<html><pre>upstream down</pre></html>"))

    with pytest.raises(ServiceUnavailableError) as exc_info:
        await provisioner.provision_server("my-bot", "", "7")

    assert exc_info.value.status == status
    assert exc_info.value.http_status == 503


@pytest.mark.asyncio
async def test_html_success_body_is_malformed(provisioner, panel):
    panel.queue("create_server", html_response(200, "<!DOCTYPE html><html><pre>login page</pre></html>"))

    with pytest.raises(MalformedResponseError) as exc_info:
        await provisioner.provision_server("my-bot", "", "7")

    assert exc_info.value.excerpt == "login page"


@pytest.mark.asyncio
async def test_missing_identifier_is_provisioning_error(provisioner, panel):
    panel.queue("create_server", json_response(201, {"attributes": {"name": "my-bot"}}))

    with pytest.raises(ProvisioningError, match="identifier missing"):
        await provisioner.provision_server("my-bot", "", "7")


@pytest.mark.asyncio
async def test_other_failures_carry_vendor_message(provisioner, panel):
    panel.queue("create_server", json_response(500, {"errors": [{"detail": "No allocations available."}]}))

    with pytest.raises(ProvisioningError, match="No allocations available."):
        await provisioner.provision_server("my-bot", "", "7")


@pytest.mark.asyncio
async def test_transport_failure_propagates(provisioner, panel):
    panel.queue("create_server", ExhaustedRetriesError(3, OSError("refused")))

    with pytest.raises(ExhaustedRetriesError):
        await provisioner.provision_server("my-bot", "", "7")


def test_extract_helpers():
    assert extract_attributes({"attributes": {"id": 1}}) == {"id": 1}
    assert extract_attributes({"data": {"attributes": {"id": 2}}}) == {"id": 2}
    assert extract_attributes([]) == {}
    assert extract_server_id({"id": 5}) == "5"
    assert extract_server_id({"uuid": "", "identifier": "x"}) == "x"
    assert extract_server_id({}) is None


@pytest.mark.asyncio
async def test_provision_account_creates_user(provisioner, panel, trace):
    panel.queue("find_users_by_email", json_response(200, {"data": []}))
    panel.queue("create_user", json_response(201, {"attributes": {"id": 31}}))

    user_id = await provisioner.provision_account("Dev@Example.com", "DevUser", "s3cretpass", "Dev", "User", trace)

    assert user_id == "31"
    payload = panel.calls[-1][1]
    assert payload["email"] == "dev@example.com"
    assert payload["username"] == "devuser"
    assert "s3cretpass" not in str(trace.entries)


@pytest.mark.asyncio
async def test_provision_account_rejects_existing_email(provisioner, panel):
    panel.queue("find_users_by_email", json_response(200, {"data": [{"attributes": {"id": 3}}]}))

    with pytest.raises(AccountExistsError):
        await provisioner.provision_account("dev@example.com", "devuser", "s3cretpass", "Dev", "User")
    assert panel.count("create_user") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("username,password", [("ab", "longenough"), ("devuser", "short")])
async def test_provision_account_validates_lengths(provisioner, panel, username, password):
    with pytest.raises(ValidationError):
        await provisioner.provision_account("dev@example.com", username, password, "Dev", "User")
    assert panel.calls == []


@pytest.mark.asyncio
async def test_delete_server_treats_404_as_already_gone(provisioner, panel):
    panel.queue("delete_server", json_response(404, {"errors": [{"detail": "Not found"}]}))
    assert await provisioner.delete_server(SERVER_UUID) is False


@pytest.mark.asyncio
async def test_delete_server_success(provisioner, panel):
    panel.queue("delete_server", json_response(204))
    assert await provisioner.delete_server(SERVER_UUID) is True
