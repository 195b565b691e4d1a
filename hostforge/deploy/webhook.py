import hmac
import json
import hashlib
from typing import Any, Dict, Optional

from hostforge.core.errors import AuthorizationError, ValidationError
from hostforge.core.logging import log
from hostforge.core.store import Store
from hostforge.deploy.models import PushEvent, Site
from hostforge.deploy.pipeline import DeploymentService

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"


def expected_signature(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, header: Optional[str]) -> bool:
    if not secret or not header:
        return False
    return hmac.compare_digest(expected_signature(secret, body), header)


def parse_push(payload: Dict[str, Any]) -> PushEvent:
    ref = payload.get("ref") or ""
    branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
    head = payload.get("head_commit") or {}
    repo = payload.get("repository") or {}
    author = (head.get("author") or {}).get("name") or (payload.get("pusher") or {}).get("name")
    return PushEvent(
        repository=repo.get("full_name") or repo.get("name") or "",
        branch=branch,
        commit_sha=head.get("id") or payload.get("after") or "",
        author=author,
        message=head.get("message"),
    )


class WebhookHandler:
    def __init__(self, store: Store, deployments: DeploymentService):
        self.store = store
        self.deployments = deployments

    def handle(self, site_id: str, event: Optional[str], body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        site = self.store.require(Site, site_id)
        if not verify_signature(site.webhook_secret, body, signature):
            log(f"site-{site.id}", "Webhook rejected: invalid signature", level="warning")
            raise AuthorizationError("Invalid signature.")

        if event != "push":
            return {"status": "ignored", "reason": f"event {event or 'unknown'} is not handled"}

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            raise ValidationError({"payload": "Webhook body is not valid JSON."})
        push = parse_push(payload)

        if site.git is None or push.branch != site.git.branch:
            return {"status": "ignored", "reason": f"push to {push.branch} does not match the deployed branch"}
        if not site.auto_deploy:
            return {"status": "ignored", "reason": "auto deploy is disabled"}

        dep = self.deployments.deploy(site.id, triggered_by="webhook", push=push)
        log(f"site-{site.id}", f"Webhook push {push.commit_sha[:7]} on {push.branch} queued deployment #{dep.id}")
        return {"status": "queued", "deployment_id": dep.id, "push": push.model_dump()}
