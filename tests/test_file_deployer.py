import asyncio
import json

import aiohttp
import pytest

from conftest import SERVER_UUID, FakeSleep, json_response
from errors import AuthenticationError, ServerNotReadyError, ValidationError
from file_deployer import (
    FileDeployer, FileUploadJob, FileUploadResult, TOKEN_PLACEHOLDER, build_bot_files, generate_package_json,
    validate_upload,
)
from http_retry import HttpResponse


@pytest.fixture
def deployer(panel):
    return FileDeployer(panel, readiness_attempts=3, readiness_delay=30, sleep=FakeSleep())


def by_path(responses):
    """Panel write_file handler answering per file path."""
    def answer(server_id, path, content):
        return responses[path]
    return answer


@pytest.mark.asyncio
async def test_all_files_uploaded(deployer, panel, trace):
    panel.queue("write_file", json_response(204))
    files = [{"path": "bot.js", "content": "x"}, {"path": "package.json", "content": "{}"}]

    summary = await deployer.upload_files(SERVER_UUID, files, trace)

    assert summary.success
    assert (summary.total, summary.successful, summary.failed) == (2, 2, 0)
    assert [r.path for r in summary.results] == ["bot.js", "package.json"]
    assert summary.results[0].size == 1
    assert panel.count("write_file") == 2


@pytest.mark.asyncio
async def test_partial_failure_keeps_going(deployer, panel):
    panel.queue("write_file", by_path({
        "a.js": json_response(204),
        "b.js": json_response(413),
        "c.js": json_response(204),
    }))
    files = [FileUploadJob("a.js", "1"), FileUploadJob("b.js", "2"), FileUploadJob("c.js", "3")]

    summary = await deployer.upload_files(SERVER_UUID, files)

    assert summary.success
    assert (summary.successful, summary.failed) == (2, 1)
    failed = summary.results[1]
    assert not failed.success
    assert failed.error == "Failed to upload b.js: File is too large"


@pytest.mark.asyncio
async def test_all_failed_reports_each_reason(deployer, panel):
    panel.queue("write_file", by_path({
        "a.js": json_response(404),
        "b.js": json_response(422, {"errors": [{"detail": "Path is invalid."}]}),
        "c.js": json_response(500, {"message": "Disk full"}),
    }))
    files = [FileUploadJob("a.js", "1"), FileUploadJob("b.js", "2"), FileUploadJob("c.js", "3")]

    summary = await deployer.upload_files(SERVER_UUID, files)

    assert not summary.success
    assert [r.error for r in summary.results] == [
        "Failed to upload a.js: Server not found",
        "Failed to upload b.js: Validation failed: Path is invalid.",
        "Failed to upload c.js: Disk full",
    ]
    assert summary.to_dict()["summary"] == {"total": 3, "successful": 0, "failed": 3}


@pytest.mark.asyncio
async def test_transport_error_becomes_file_result(deployer, panel):
    def answer(server_id, path, content):
        if path == "b.js":
            raise aiohttp.ClientConnectionError("connection reset")
        return json_response(204)

    panel.queue("write_file", answer)

    summary = await deployer.upload_files(SERVER_UUID, [FileUploadJob("a.js", "1"), FileUploadJob("b.js", "2")])

    assert summary.successful == 1
    assert "connection reset" in summary.results[1].error


@pytest.mark.asyncio
async def test_one_failure_in_five_leaves_others_untouched(deployer, panel):
    panel.queue("write_file", by_path({
        "f1.js": json_response(204),
        "f2.js": json_response(204),
        "f3.js": json_response(500, {"errors": [{"detail": "Disk quota exceeded"}]}),
        "f4.js": json_response(204),
        "f5.js": json_response(204),
    }))
    files = [FileUploadJob(f"f{i}.js", str(i)) for i in range(1, 6)]

    summary = await deployer.upload_files(SERVER_UUID, files)

    assert (summary.total, summary.successful, summary.failed) == (5, 4, 1)
    assert [r.success for r in summary.results] == [True, True, False, True, True]
    assert summary.results[2].error == "Failed to upload f3.js: Disk quota exceeded"
    assert all(r.error is None for i, r in enumerate(summary.results) if i != 2)
    assert panel.count("write_file") == 5


@pytest.mark.asyncio
async def test_writes_run_concurrently(deployer, panel):
    files = [FileUploadJob(f"f{i}.js", "x") for i in range(4)]
    started = []
    all_started = asyncio.Event()

    async def write_file(server_id, path, content, trace=None):
        started.append(path)
        if len(started) == len(files):
            all_started.set()
        # blocks until every write has started
        await asyncio.wait_for(all_started.wait(), timeout=1)
        return json_response(204)

    panel.write_file = write_file

    summary = await deployer.upload_files(SERVER_UUID, files)

    assert summary.successful == 4
    assert sorted(started) == [job.path for job in files]


def test_results_use_camel_case_keys():
    result = FileUploadResult(path="bot.js", success=True, duration_ms=12, size=3)
    assert result.to_dict() == {"path": "bot.js", "success": True, "error": None, "durationMs": 12, "size": 3}


@pytest.mark.parametrize("server_id,files", [
    ("", [{"path": "a", "content": ""}]),
    (SERVER_UUID, []),
    (SERVER_UUID, None),
    (SERVER_UUID, {"path": "a", "content": "x"}),
    (SERVER_UUID, [{"path": "", "content": "x"}]),
    (SERVER_UUID, [{"path": "a", "content": 5}]),
    (SERVER_UUID, ["a.js"]),
])
def test_validation_rejects_bad_batches(server_id, files):
    with pytest.raises(ValidationError):
        validate_upload(server_id, files)


@pytest.mark.asyncio
async def test_validation_happens_before_network(deployer, panel):
    with pytest.raises(ValidationError):
        await deployer.upload_files(SERVER_UUID, [{"path": "a.js", "content": "x"}, {"path": "b.js"}])
    assert panel.calls == []


@pytest.mark.asyncio
async def test_wait_until_ready_retries_409(deployer, panel):
    panel.queue("get_client_resources", json_response(409), json_response(200, {"attributes": {}}))

    await deployer.wait_until_ready(SERVER_UUID)

    assert panel.count("get_client_resources") == 2
    assert deployer._sleep.calls == [30]


@pytest.mark.asyncio
async def test_wait_until_ready_gives_up(deployer, panel):
    panel.queue("get_client_resources", json_response(409))

    with pytest.raises(ServerNotReadyError):
        await deployer.wait_until_ready(SERVER_UUID)

    assert panel.count("get_client_resources") == 3
    assert deployer._sleep.calls == [30, 30]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_wait_until_ready_auth_failure(deployer, panel, status):
    panel.queue("get_client_resources", HttpResponse(status=status))

    with pytest.raises(AuthenticationError):
        await deployer.wait_until_ready(SERVER_UUID)

    assert panel.count("get_client_resources") == 1
    assert deployer._sleep.calls == []


def test_build_bot_files_injects_token():
    code = f"client.login('{TOKEN_PLACEHOLDER}');"

    files = build_bot_files(code, bot_token="real-token")

    assert [f.path for f in files] == ["bot.js", "package.json"]
    assert files[0].content == "client.login('real-token');"
    assert build_bot_files(code)[0].content == code


def test_package_manifest():
    manifest = json.loads(generate_package_json())
    assert manifest["main"] == "bot.js"
    assert manifest["dependencies"] == {"discord.js": "^14.14.1", "dotenv": "^16.4.5"}
    assert manifest["engines"] == {"node": ">=16.9.0"}
