from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field

from hostforge.deploy.models import GitRepository
from hostforge.servers.models import ResourceKind


class ServerCreate(BaseModel):
    name: str
    public_ip: str
    private_ip: Optional[str] = None
    ssh_port: int = 22
    ssh_user: str = "root"
    key_path: Optional[str] = None


class ResourceCreate(BaseModel):
    kind: ResourceKind
    name: Optional[str] = None
    version: Optional[str] = None
    port: Optional[Union[int, str]] = None
    command: Optional[str] = None
    working_directory: Optional[str] = None
    user: Optional[str] = None
    # database users: the database engine they belong to
    parent_id: Optional[str] = None
    # root_password, rule_type, from_ip, frequency, processes, ...
    config: Dict[str, Any] = Field(default_factory=dict)


class ResourceUpdate(BaseModel):
    name: Optional[str] = None
    version: Optional[str] = None
    port: Optional[Union[int, str]] = None
    command: Optional[str] = None
    working_directory: Optional[str] = None
    user: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"config"}, exclude_none=True)
        if "port" in data:
            data["port"] = str(data["port"])
        data.update(self.config)
        return data


class SetDefaultRequest(BaseModel):
    flag: str = "is_default"


class SiteCreate(BaseModel):
    domain: str
    document_root: Optional[str] = None
    php_version: Optional[str] = None
    node_id: Optional[str] = None
    database_id: Optional[str] = None
    git: Optional[GitRepository] = None
    deployment_script: Optional[str] = None
    auto_deploy: bool = False
    webhook_secret: Optional[str] = None


class SiteUpdate(BaseModel):
    php_version: Optional[str] = None
    node_id: Optional[str] = None
    database_id: Optional[str] = None
    git: Optional[GitRepository] = None
    deployment_script: Optional[str] = None
    auto_deploy: Optional[bool] = None


class RollbackRequest(BaseModel):
    deployment_id: str


class PruneRequest(BaseModel):
    keep: Optional[int] = Field(default=None, ge=1)
