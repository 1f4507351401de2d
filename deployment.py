"""
Deployment workflow module for Bot Builder.
Runs provision -> wait for install -> upload for one bot and keeps the
progress of every deployment in memory.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from config import DEPLOYMENT_HISTORY_LIMIT
from diagnostics import RequestTrace
from errors import BotBuilderError
from file_deployer import FileDeployer, FileUploadJob, UploadSummary, validate_files
from installation_poller import InstallationPoller
from provisioner import DeploymentRequest, ServerProvisioner

logger = logging.getLogger(__name__)

CREATING = "creating"
INSTALLING = "installing"
UPLOADING = "uploading"
COMPLETE = "complete"
ERROR = "error"
FINISHED_STAGES = (COMPLETE, ERROR)


@dataclass
class DeploymentRecord:
    id: str
    user_id: str
    server_name: str
    stage: str = CREATING
    server_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    upload: Optional[UploadSummary] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace: RequestTrace = field(default_factory=lambda: RequestTrace(source="deployment"), repr=False)

    @property
    def finished(self) -> bool:
        return self.stage in FINISHED_STAGES

    def to_dict(self, include_logs: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "serverName": self.server_name,
            "stage": self.stage,
            "serverId": self.server_id,
            "error": self.error,
            "upload": self.upload.to_dict() if self.upload else None,
            "createdAt": self.created_at,
        }
        if include_logs:
            data["logs"] = self.trace.entries
        return data


class DeploymentService:
    """Coordinates provisioner, poller and deployer for each deployment."""

    def __init__(self, provisioner: ServerProvisioner, poller: InstallationPoller, deployer: FileDeployer,
                 precheck_readiness: bool = False, history_limit: int = DEPLOYMENT_HISTORY_LIMIT):
        self.provisioner = provisioner
        self.poller = poller
        self.deployer = deployer
        self.precheck_readiness = precheck_readiness
        self.history_limit = history_limit
        self._records: Dict[str, DeploymentRecord] = {}
        self._tasks: Set[asyncio.Task] = set()
        logger.info(f"DeploymentService initialized (readiness pre-check: {precheck_readiness})")

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        return self._records.get(deployment_id)

    def list_for_user(self, user_id: str) -> List[DeploymentRecord]:
        return [r for r in self._records.values() if r.user_id == str(user_id)]

    def _new_record(self, request: DeploymentRequest, user_id: Optional[str],
                    trace: Optional[RequestTrace]) -> DeploymentRecord:
        record = DeploymentRecord(
            id=uuid.uuid4().hex,
            user_id=str(user_id or request.owner_account_id),
            server_name=request.desired_name,
            trace=trace or RequestTrace(source="deployment"),
        )
        self._records[record.id] = record
        self._evict_finished()
        return record

    def _evict_finished(self):
        """Drop the oldest finished records once more than history_limit are kept."""
        excess = len(self._records) - self.history_limit
        if excess <= 0:
            return
        # insertion order is creation order
        stale = [rid for rid, r in self._records.items() if r.finished][:excess]
        for rid in stale:
            del self._records[rid]
        if stale:
            logger.debug(f"Evicted {len(stale)} finished deployment records")

    def _set_stage(self, record: DeploymentRecord, stage: str, **data):
        record.stage = stage
        record.trace.log("Deployment Stage", {"deploymentId": record.id, "stage": stage, **data})

    async def _run(self, record: DeploymentRecord, request: DeploymentRequest, jobs: List[FileUploadJob]) -> DeploymentRecord:
        trace = record.trace
        try:
            self._set_stage(record, CREATING)
            server = await self.provisioner.provision_server(
                request.desired_name, request.description, request.owner_account_id, trace.child("pterodactyl"))
            record.server_id = server.id

            self._set_stage(record, INSTALLING, serverId=server.id)
            await self.poller.wait_for_installation(server.id, trace.child("installation"))

            self._set_stage(record, UPLOADING, serverId=server.id)
            upload_trace = trace.child("upload-files")
            if self.precheck_readiness:
                await self.deployer.wait_until_ready(server.id, upload_trace)
            record.upload = await self.deployer.upload_files(server.id, jobs, upload_trace)
            if not record.upload.success:
                record.error = {"error": "UPLOAD_FAILED", "message": "No files could be uploaded to the server"}
                self._set_stage(record, ERROR, serverId=server.id)
                return record

            self._set_stage(record, COMPLETE, serverId=server.id)
            logger.info(f"Deployment {record.id} complete on server {server.id}")
            return record
        except BotBuilderError as e:
            record.error = e.to_dict()
            self._set_stage(record, ERROR, error=e.message)
            logger.warning(f"Deployment {record.id} failed: {e.message}")
            raise

    async def deploy(self, request: DeploymentRequest, files: Iterable[Union[FileUploadJob, Dict[str, Any]]],
                     user_id: Optional[str] = None, trace: Optional[RequestTrace] = None) -> DeploymentRecord:
        """
        Run a deployment to completion.

        Args:
            request: Server name, description and owning panel account
            files: Files to write once the server is installed
            user_id: Account the deployment belongs to, defaults to the panel owner
            trace: Diagnostic context, a new one is created when omitted

        Returns:
            DeploymentRecord: Final record, stage `complete` or `error`

        Raises:
            BotBuilderError: The failure that moved the record to `error`
        """
        jobs = validate_files(files)
        record = self._new_record(request, user_id, trace)
        return await self._run(record, request, jobs)

    def start(self, request: DeploymentRequest, files: Iterable[Union[FileUploadJob, Dict[str, Any]]],
              user_id: Optional[str] = None, trace: Optional[RequestTrace] = None) -> DeploymentRecord:
        """Validate, then run the deployment as a background task and return its record."""
        jobs = validate_files(files)
        record = self._new_record(request, user_id, trace)
        task = asyncio.create_task(self._run(record, request, jobs))
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(record, t))
        return record

    def _on_done(self, record: DeploymentRecord, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            record.error = {"error": "CANCELLED", "message": "Deployment was cancelled"}
            record.stage = ERROR
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, BotBuilderError):
            record.error = {"error": "INTERNAL_ERROR", "message": str(exc)}
            record.stage = ERROR
            logger.error(f"Deployment {record.id} crashed: {exc}", exc_info=exc)

    async def shutdown(self):
        """Cancel unfinished deployments and wait for them to stop."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
