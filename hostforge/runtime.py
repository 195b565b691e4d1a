from typing import Optional

from fastapi import Request

from hostforge.core.config_store import AppConfig
from hostforge.core.signing import LinkSigner
from hostforge.core.store import Store
from hostforge.deploy.pipeline import DeploymentService
from hostforge.deploy.webhook import WebhookHandler
from hostforge.guard.conflicts import ConflictGuard
from hostforge.provision.protocol import ProvisionProtocol
from hostforge.tasks.lifecycle import LifecycleService
from hostforge.tasks.task_manager import TaskManager
from hostforge.transport.base import Transport
from hostforge.transport.ssh import SshTransport


class Runtime:
    """Everything one running app shares: store, transport, task manager, services."""

    def __init__(self, config: AppConfig, transport: Optional[Transport] = None):
        self.config = config
        self.store = Store(config.data_dir)
        self.transport = transport or SshTransport(timeout_seconds=config.ssh_timeout_seconds)
        self.signer = LinkSigner(config.signing_key, config.provision_link_ttl_seconds)
        self.tasks = TaskManager(self.store, self.transport, config)
        self.guard = ConflictGuard(self.store, config.app_user)
        self.lifecycle = LifecycleService(self.store, self.guard, self.tasks, self.transport)
        self.provision = ProvisionProtocol(self.store, self.signer, self.tasks, config)
        self.deployments = DeploymentService(self.store, self.tasks, self.transport, config)
        self.webhooks = WebhookHandler(self.store, self.deployments)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
