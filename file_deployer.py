"""
File deployment module for Bot Builder.
Writes generated bot files onto a provisioned server, one concurrent write
per file, and reports per-file outcomes.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp

from config import READINESS_MAX_ATTEMPTS, READINESS_RETRY_DELAY
from diagnostics import RequestTrace
from errors import AuthenticationError, BotBuilderError, ServerNotReadyError, ValidationError
from http_retry import HttpResponse, ParsedJson, Sleep, classify_body
from panel_client import BOT_MAIN_FILE, PanelClient, vendor_error_message

logger = logging.getLogger(__name__)

TOKEN_PLACEHOLDER = "your_bot_token_here"

_STATUS_MESSAGES = {
    401: "Invalid or missing API credentials",
    404: "Server not found",
    409: "Server is not ready for file uploads",
    413: "File is too large",
}


@dataclass
class FileUploadJob:
    path: str
    content: str


@dataclass
class FileUploadResult:
    path: str
    success: bool
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "success": self.success, "error": self.error,
                "durationMs": self.duration_ms, "size": self.size}


@dataclass
class UploadSummary:
    total: int
    successful: int
    failed: int
    results: List[FileUploadResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.successful > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "summary": {"total": self.total, "successful": self.successful, "failed": self.failed},
        }


def validate_files(files: Iterable[Union[FileUploadJob, Dict[str, Any]]]) -> List[FileUploadJob]:
    """
    Normalize a batch of files, rejecting malformed entries.

    Args:
        files: Jobs or `{path, content}` mappings

    Returns:
        List[FileUploadJob]: Normalized jobs in the given order
    """
    if files is None or isinstance(files, (str, bytes, dict)):
        raise ValidationError("Files must be provided as an array")
    files = list(files)
    if not files:
        raise ValidationError("At least one file is required")

    jobs = []
    for index, item in enumerate(files):
        if isinstance(item, FileUploadJob):
            path, content = item.path, item.content
        elif isinstance(item, dict):
            path, content = item.get("path"), item.get("content")
        else:
            raise ValidationError(f"Invalid file object at index {index}")
        if not isinstance(path, str) or not path.strip() or not isinstance(content, str):
            raise ValidationError(f"Invalid file object at index {index}")
        jobs.append(FileUploadJob(path=path, content=content))
    return jobs


def validate_upload(server_id: str, files: Iterable[Union[FileUploadJob, Dict[str, Any]]]) -> List[FileUploadJob]:
    """Check an upload request before any network call."""
    if not server_id or not str(server_id).strip():
        raise ValidationError("Server ID is required")
    return validate_files(files)


def upload_error_message(response: HttpResponse) -> str:
    """Human-readable reason for a failed file write."""
    if response.status in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[response.status]
    body = classify_body(response)
    if isinstance(body, ParsedJson):
        if response.status == 422:
            return f"Validation failed: {vendor_error_message(body.data, response)}"
        return vendor_error_message(body.data, response)
    if body.excerpt:
        return body.excerpt[:100]
    return f"HTTP {response.status}: {response.reason}".rstrip(": ")


def generate_package_json() -> str:
    """npm manifest for a generated discord.js bot."""
    return json.dumps({
        "name": "discord-bot",
        "version": "1.0.0",
        "description": "A Discord bot generated with Discord Bot Builder",
        "main": BOT_MAIN_FILE,
        "scripts": {"start": f"node {BOT_MAIN_FILE}"},
        "dependencies": {
            "discord.js": "^14.14.1",
            "dotenv": "^16.4.5",
        },
        "engines": {"node": ">=16.9.0"},
    }, indent=2)


def build_bot_files(code: str, bot_token: Optional[str] = None) -> List[FileUploadJob]:
    """Files needed to run a generated bot: the script and its manifest."""
    if bot_token:
        code = code.replace(TOKEN_PLACEHOLDER, bot_token)
    return [
        FileUploadJob(path=BOT_MAIN_FILE, content=code),
        FileUploadJob(path="package.json", content=generate_package_json()),
    ]


class FileDeployer:
    """Uploads file batches to a server through the panel's client API."""

    def __init__(
        self,
        panel: PanelClient,
        readiness_attempts: int = READINESS_MAX_ATTEMPTS,
        readiness_delay: float = READINESS_RETRY_DELAY,
        sleep: Sleep = asyncio.sleep,
    ):
        self.panel = panel
        self.readiness_attempts = readiness_attempts
        self.readiness_delay = readiness_delay
        self._sleep = sleep

    async def wait_until_ready(self, server_id: str, trace: Optional[RequestTrace] = None) -> None:
        """
        Confirm the server accepts file operations.

        The panel answers 409 while a server is still installing; that is
        retried with a fixed pause. Any other failure is raised at once.
        """
        trace = trace or RequestTrace(source="upload-files")
        for attempt in range(1, self.readiness_attempts + 1):
            trace.log("Checking Server Status", {"serverId": server_id, "attempt": attempt,
                                                 "maxRetries": self.readiness_attempts})
            response = await self.panel.get_client_resources(server_id, trace)
            if response.status == 409:
                trace.log("Server Not Ready", {"serverId": server_id, "attempt": attempt}, "warn")
                if attempt < self.readiness_attempts:
                    await self._sleep(self.readiness_delay)
                continue
            if response.status == 401:
                raise AuthenticationError("Invalid or missing API credentials for the hosting panel")
            if response.status == 403:
                raise AuthenticationError("API key does not have sufficient permissions")
            if not response.ok:
                raise ServerNotReadyError(f"Failed to check server status: {response.status}",
                                          {"serverId": server_id, "status": response.status})
            trace.log("Server Ready", {"serverId": server_id})
            return
        raise ServerNotReadyError("Server installation not complete after maximum retries",
                                  {"serverId": server_id})

    async def _upload_one(self, server_id: str, job: FileUploadJob, trace: RequestTrace) -> FileUploadResult:
        started = time.monotonic()
        size = len(job.content.encode("utf-8"))
        trace.log("Uploading File", {"path": job.path, "size": size})
        response = await self.panel.write_file(server_id, job.path, job.content, trace)
        if not response.ok:
            message = upload_error_message(response)
            trace.log("Upload Failed", {"path": job.path, "status": response.status, "error": message}, "error")
            return FileUploadResult(path=job.path, success=False, error=f"Failed to upload {job.path}: {message}")
        duration = int((time.monotonic() - started) * 1000)
        trace.log("File Upload Success", {"path": job.path, "duration": duration})
        return FileUploadResult(path=job.path, success=True, duration_ms=duration, size=size)

    async def upload_files(self, server_id: str, files: Iterable[Union[FileUploadJob, Dict[str, Any]]],
                           trace: Optional[RequestTrace] = None) -> UploadSummary:
        """
        Write every file to the server concurrently.

        Args:
            server_id: Target server identifier
            files: Jobs or `{path, content}` mappings
            trace: Diagnostic context

        Returns:
            UploadSummary: One result per file, in input order
        """
        trace = trace or RequestTrace(source="upload-files")
        jobs = validate_upload(server_id, files)
        trace.log("Starting Upload", {"serverId": server_id, "fileCount": len(jobs),
                                      "files": [job.path for job in jobs]})

        outcomes = await asyncio.gather(*(self._upload_one(server_id, job, trace) for job in jobs),
                                        return_exceptions=True)

        results = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, FileUploadResult):
                results.append(outcome)
            elif isinstance(outcome, (BotBuilderError, aiohttp.ClientError, OSError)):
                results.append(FileUploadResult(path=job.path, success=False,
                                                error=f"Failed to upload {job.path}: {outcome}"))
            else:
                raise outcome

        successful = sum(1 for r in results if r.success)
        summary = UploadSummary(total=len(results), successful=successful,
                                failed=len(results) - successful, results=results)
        trace.log("Upload Results", {"total": summary.total, "successful": summary.successful,
                                     "failed": summary.failed},
                  "info" if summary.success else "error")
        logger.info(f"Uploaded {successful}/{summary.total} files to server {server_id}")
        return summary
