import uuid
import secrets
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from hostforge.tasks.status import TaskStatus


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def generate_password(length: int = 24) -> str:
    return secrets.token_urlsafe(length)[:length]


def now() -> datetime:
    return datetime.now()


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ProvisionStatus(str, Enum):
    PENDING = "pending"
    INSTALLING = "installing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    INSTALLING = "installing"
    COMPLETED = "completed"
    FAILED = "failed"


PROVISION_STEPS = {
    1: "Waiting on your server to become ready",
    2: "Installing base dependencies",
    3: "Securing your server",
    4: "Verifying SSH access",
    5: "Installing firewall",
    6: "Installing PHP",
    7: "Installing Nginx",
    8: "Making final touches",
}

# Steps the host reports itself through the signed callback. The rest are
# driven from our side over SSH once step 3 completes.
HOST_REPORTED_STEPS = (1, 2, 3)


class ResourceKind(str, Enum):
    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRESQL = "postgresql"
    REDIS = "redis"
    DATABASE_USER = "database_user"
    PHP = "php"
    NODE = "node"
    FIREWALL = "firewall"
    FIREWALL_RULE = "firewall_rule"
    SCHEDULED_TASK = "scheduled_task"
    SUPERVISOR_TASK = "supervisor_task"
    REVERSE_PROXY = "reverse_proxy"


class Server(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    public_ip: str
    private_ip: Optional[str] = None
    ssh_port: int = 22
    ssh_user: str = "root"
    key_path: Optional[str] = None
    root_password: str = Field(default_factory=generate_password)
    connection_status: ConnectionStatus = ConnectionStatus.PENDING
    provision_status: ProvisionStatus = ProvisionStatus.PENDING
    provision: Dict[int, StepStatus] = Field(default_factory=dict)
    scheduler_status: Optional[TaskStatus] = None
    supervisor_status: Optional[TaskStatus] = None
    monitoring_status: Optional[TaskStatus] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    @field_validator("provision")
    @classmethod
    def _known_steps(cls, v: Dict[int, StepStatus]) -> Dict[int, StepStatus]:
        for step in v:
            if step not in PROVISION_STEPS:
                raise ValueError(f"unknown provision step {step}")
        return v

    def step(self, n: int) -> StepStatus:
        return self.provision.get(n, StepStatus.PENDING)


class Resource(BaseModel):
    id: str = Field(default_factory=new_id)
    server_id: str
    kind: ResourceKind
    name: Optional[str] = None
    version: Optional[str] = None
    # "3306" or, for firewall rules, a range like "3000-3005"
    port: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    error_log: Optional[str] = None
    previous_status: Optional[TaskStatus] = None
    update_status: Optional[TaskStatus] = None
    update_error_log: Optional[str] = None
    is_default: bool = False
    is_cli_default: bool = False
    is_site_default: bool = False
    is_root: bool = False
    parent_id: Optional[str] = None
    command: Optional[str] = None
    working_directory: Optional[str] = None
    user: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    pending_changes: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    @field_validator("port", mode="before")
    @classmethod
    def _port_as_text(cls, v):
        if v is None or v == "":
            return None
        return str(v)

    @property
    def holds_default(self) -> bool:
        return self.is_default or self.is_cli_default or self.is_site_default
