# hostforge/core/store.py
import os
import json
import threading
from typing import Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from hostforge.core.errors import NotFoundError
from hostforge.core.secret_store import SecretStore
from hostforge.deploy.models import Deployment, Site
from hostforge.servers.models import Resource, ResourceKind, Server

M = TypeVar("M", bound=BaseModel)

_COLLECTIONS: Dict[type, str] = {
    Server: "servers",
    Resource: "resources",
    Site: "sites",
    Deployment: "deployments",
}


class Store:
    """JSON document store, one file per record.

    Readers and writers share one re-entrant lock. Callers that must change
    several records together (status plus default flags) hold ``store.lock``
    around the reads and a single :meth:`save_many`.
    """

    def __init__(self, data_dir: str, secrets: Optional[SecretStore] = None):
        self.data_dir = data_dir
        self.lock = threading.RLock()
        self.secrets = secrets or SecretStore(os.path.join(data_dir, "keys"))
        for name in list(_COLLECTIONS.values()) + ["jobs"]:
            os.makedirs(os.path.join(data_dir, name), exist_ok=True)

    # ---------------- files ----------------
    def _path(self, coll: str, rid: str) -> str:
        rid = str(rid).strip()
        if not rid or "/" in rid or "\\" in rid or rid.startswith("."):
            raise ValueError(f"Invalid record id: {rid!r}")
        return os.path.join(self.data_dir, coll, f"{rid}.json")

    def _write_json(self, path: str, data: dict):
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)

    def _read_json(self, path: str) -> Optional[dict]:
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _ids(self, coll: str) -> List[str]:
        d = os.path.join(self.data_dir, coll)
        return sorted(name[:-5] for name in os.listdir(d) if name.endswith(".json"))

    # ---------------- generic ----------------
    def _dump(self, model: BaseModel) -> dict:
        data = model.model_dump(mode="json")
        if isinstance(model, Server):
            pw = data.pop("root_password")
            data["secret"] = self.secrets.encrypt(f"server-{model.id}", {"root_password": pw})
        return data

    def _load(self, cls: Type[M], data: dict) -> M:
        if cls is Server and "secret" in data:
            secret = self.secrets.decrypt(f"server-{data['id']}", data.pop("secret"))
            data["root_password"] = secret["root_password"]
        return cls(**data)

    def save(self, model: BaseModel):
        with self.lock:
            self._write_json(self._path(_COLLECTIONS[type(model)], model.id), self._dump(model))

    def save_many(self, *models: BaseModel):
        with self.lock:
            for m in models:
                self.save(m)

    def get(self, cls: Type[M], rid: Optional[str]) -> Optional[M]:
        if not rid:
            return None
        with self.lock:
            data = self._read_json(self._path(_COLLECTIONS[cls], rid))
        return self._load(cls, data) if data is not None else None

    def require(self, cls: Type[M], rid: str) -> M:
        item = self.get(cls, rid)
        if item is None:
            raise NotFoundError(f"{cls.__name__} {rid} not found")
        return item

    def list(self, cls: Type[M], where: Optional[Callable[[M], bool]] = None) -> List[M]:
        res = []
        coll = _COLLECTIONS[cls]
        with self.lock:
            for rid in self._ids(coll):
                data = self._read_json(self._path(coll, rid))
                if data is None:
                    continue
                item = self._load(cls, data)
                if where is None or where(item):
                    res.append(item)
        return res

    def delete(self, cls: Type[M], rid: str):
        with self.lock:
            p = self._path(_COLLECTIONS[cls], rid)
            if os.path.exists(p):
                os.remove(p)
            if cls is Server:
                self.secrets.delete(f"server-{rid}")

    # ---------------- typed helpers ----------------
    def get_server(self, sid: str) -> Optional[Server]:
        return self.get(Server, sid)

    def get_resource(self, rid: str) -> Optional[Resource]:
        return self.get(Resource, rid)

    def resources(self, server_id: str, *kinds: ResourceKind) -> List[Resource]:
        return self.list(Resource, lambda r: r.server_id == server_id and (not kinds or r.kind in kinds))

    def sites(self, server_id: Optional[str] = None) -> List[Site]:
        return self.list(Site, lambda s: server_id is None or s.server_id == server_id)

    def deployments(self, site_id: str) -> List[Deployment]:
        """Newest first."""
        items = self.list(Deployment, lambda d: d.site_id == site_id)
        items.sort(key=lambda d: (d.started_at or d.created_at, d.created_at), reverse=True)
        return items

    def delete_server(self, sid: str):
        with self.lock:
            for r in self.resources(sid):
                self.delete(Resource, r.id)
            for s in self.sites(sid):
                for d in self.deployments(s.id):
                    self.delete(Deployment, d.id)
                self.delete(Site, s.id)
            self.delete(Server, sid)

    # ---------------- queued jobs ----------------
    def save_job(self, job_id: str, descriptor: dict):
        with self.lock:
            self._write_json(self._path("jobs", job_id), descriptor)

    def delete_job(self, job_id: str):
        with self.lock:
            p = self._path("jobs", job_id)
            if os.path.exists(p):
                os.remove(p)

    def list_jobs(self) -> List[dict]:
        with self.lock:
            res = [self._read_json(self._path("jobs", jid)) for jid in self._ids("jobs")]
        res = [j for j in res if j]
        res.sort(key=lambda j: j.get("enqueued_at", 0))
        return res
