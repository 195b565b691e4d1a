from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from hostforge.servers.models import new_id, now
from hostforge.tasks.status import TaskStatus

DEFAULT_DEPLOYMENT_SCRIPT = "{composer} install --no-dev --no-interaction --prefer-dist --optimize-autoloader\n{php} artisan migrate --force"

TriggeredBy = Literal["manual", "webhook", "api"]


class GitRepository(BaseModel):
    repository: str
    branch: str = "main"


class Site(BaseModel):
    id: str = Field(default_factory=new_id)
    server_id: str
    domain: str
    document_root: Optional[str] = None
    php_version: Optional[str] = None
    node_id: Optional[str] = None
    database_id: Optional[str] = None
    git: Optional[GitRepository] = None
    deployment_script: str = DEFAULT_DEPLOYMENT_SCRIPT
    auto_deploy: bool = False
    webhook_secret: Optional[str] = None
    is_default: bool = False
    status: TaskStatus = TaskStatus.ACTIVE
    active_deployment_id: Optional[str] = None
    last_deployment_sha: Optional[str] = None
    last_deployed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=now)


class Deployment(BaseModel):
    id: str = Field(default_factory=new_id)
    site_id: str
    server_id: str
    status: TaskStatus = TaskStatus.PENDING
    deployment_script: str
    deployment_path: Optional[str] = None
    output: str = ""
    # stderr of every step, on success as well as failure
    stderr_output: str = ""
    error_output: Optional[str] = None
    exit_code: Optional[int] = None
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    triggered_by: TriggeredBy = "manual"
    commit_message: Optional[str] = None
    commit_author: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=now)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.duration_ms is None:
            return None
        return round(self.duration_ms / 1000, 2)

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING

    @property
    def is_running(self) -> bool:
        return self.status == TaskStatus.UPDATING

    @property
    def is_success(self) -> bool:
        return self.status == TaskStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @property
    def can_rollback(self) -> bool:
        return self.is_success and self.deployment_path is not None

    def summary(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "commit_sha": self.commit_sha,
            "branch": self.branch,
            "duration_ms": self.duration_ms,
            "duration_seconds": self.duration_seconds,
            "is_running": self.is_running,
            "is_success": self.is_success,
            "is_failed": self.is_failed,
        }


class PushEvent(BaseModel):
    repository: str
    branch: str
    commit_sha: str
    author: Optional[str] = None
    message: Optional[str] = None


class PruneResult(BaseModel):
    site_id: str
    deleted: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
