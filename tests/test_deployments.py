from datetime import timedelta

import pytest

from hostforge.core.errors import StateConflictError, TransportError, ValidationError
from hostforge.deploy.models import Deployment, GitRepository, Site
from hostforge.deploy.pipeline import release_name, relink_commands, resolve_placeholders, script_lines
from hostforge.servers.models import now
from hostforge.tasks.status import TaskStatus

ROOT = "/home/hostforge/deployments/shop.example.com"


@pytest.fixture
def site(rt, server):
    s = Site(
        server_id=server.id,
        domain="shop.example.com",
        php_version="8.3",
        git=GitRepository(repository="git@github.com:acme/shop.git", branch="main"),
        deployment_script="# install\n{composer} install --no-dev\n\n{php} artisan migrate --force\n",
    )
    rt.store.save(s)
    return s


def _release(transport):
    clone = next(c for c in transport.commands if c.startswith("git clone"))
    return clone.rsplit(" ", 1)[1]


def test_script_lines_skip_blanks_and_comments():
    assert script_lines("# a\n\n  npm ci  \n#b\nnpm run build") == ["npm ci", "npm run build"]


def test_placeholders():
    assert resolve_placeholders("{php} artisan migrate", "8.3") == "/usr/bin/php8.3 artisan migrate"
    assert resolve_placeholders("{composer} install", "8.2") == "/usr/bin/php8.2 /usr/local/bin/composer install"
    assert resolve_placeholders("{php} -v", None) == "php -v"


def test_relink_removes_before_linking():
    cmds = relink_commands("/r/releases/1")
    storage_rm = cmds.index("rm -rf /r/releases/1/storage")
    storage_ln = cmds.index("ln -sfn ../../shared/storage /r/releases/1/storage")
    assert storage_rm < storage_ln
    assert "ln -sfn ../../../shared/public/build /r/releases/1/public/build" in cmds
    assert cmds.index("rm -f /r/releases/1/.env") < cmds.index("ln -sfn ../../shared/.env /r/releases/1/.env")


def test_deploy_without_repository_is_rejected(rt, server):
    bare = Site(server_id=server.id, domain="bare.example.com")
    rt.store.save(bare)
    with pytest.raises(ValidationError) as e:
        rt.deployments.deploy(bare.id)
    assert "git" in e.value.errors
    assert rt.store.deployments(bare.id) == []
    assert rt.tasks.pending_count() == 0


def test_successful_deployment_switches_current(rt, transport, site):
    transport.respond("git rev-parse HEAD", stdout="abc123def\n")
    dep = rt.deployments.deploy(site.id)
    assert dep.status == TaskStatus.PENDING
    rt.tasks.drain()

    stored = rt.store.get(Deployment, dep.id)
    assert stored.status == TaskStatus.SUCCESS
    assert stored.exit_code == 0
    assert stored.commit_sha == "abc123def"
    assert stored.deployment_path.startswith(f"{ROOT}/releases/")
    assert stored.duration_ms is not None

    s = rt.store.get(Site, site.id)
    assert s.active_deployment_id == dep.id
    assert s.last_deployment_sha == "abc123def"

    release = _release(transport)
    cmds = transport.commands
    assert f"cd {release} && /usr/bin/php8.3 /usr/local/bin/composer install --no-dev" in cmds
    assert f"cd {release} && /usr/bin/php8.3 artisan migrate --force" in cmds
    assert not any("# install" in c for c in cmds)
    assert cmds[-1] == f"ln -sfn {release} {ROOT}/current"
    assert cmds.index(f"cd {release} && git rev-parse HEAD") < len(cmds) - 1


def test_failed_step_keeps_current_release(rt, transport, site):
    transport.fail_on("artisan migrate", stderr="SQLSTATE[HY000] [2002] Connection refused")
    dep = rt.deployments.deploy(site.id)
    rt.tasks.drain()

    stored = rt.store.get(Deployment, dep.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.exit_code == 1
    assert "Connection refused" in stored.error_output
    assert not any(c.endswith(f"{ROOT}/current") for c in transport.commands)
    assert rt.store.get(Site, site.id).active_deployment_id is None
    assert "Connection refused" in stored.stderr_output


def test_successful_deployment_keeps_warnings(rt, transport, site):
    transport.respond("composer install", stdout="Installing dependencies", stderr="Warning: The lock file is not up to date")
    dep = rt.deployments.deploy(site.id)
    rt.tasks.drain()

    stored = rt.store.get(Deployment, dep.id)
    assert stored.status == TaskStatus.SUCCESS
    assert "Installing dependencies" in stored.output
    assert stored.stderr_output == "Warning: The lock file is not up to date"
    assert stored.error_output is None


def test_release_names_differ_within_one_second(monkeypatch):
    frozen = now()
    monkeypatch.setattr("hostforge.deploy.pipeline.now", lambda: frozen)
    a, b = release_name("aaaaaaaa1111"), release_name("bbbbbbbb2222")
    assert a != b
    assert a == f"{frozen.strftime('%Y%m%d-%H%M%S')}-aaaaaaaa"


def test_release_directory_carries_deployment_id(rt, transport, site):
    dep = rt.deployments.deploy(site.id)
    rt.tasks.drain()
    stored = rt.store.get(Deployment, dep.id)
    assert stored.deployment_path.endswith(f"-{dep.id[:8]}")
    assert _release(transport) == stored.deployment_path


def test_script_is_snapshotted_at_queue_time(rt, transport, site):
    dep = rt.deployments.deploy(site.id)
    site.deployment_script = "echo changed"
    rt.store.save(site)
    rt.tasks.drain()

    assert rt.store.get(Deployment, dep.id).deployment_script.startswith("# install")
    assert not any("echo changed" in c for c in transport.commands)


def test_one_deployment_at_a_time(rt, site):
    rt.deployments.deploy(site.id)
    with pytest.raises(StateConflictError):
        rt.deployments.deploy(site.id)


def _finished(rt, site, minutes_ago, status=TaskStatus.SUCCESS, path=True):
    d = Deployment(
        site_id=site.id,
        server_id=site.server_id,
        deployment_script="",
        status=status,
        created_at=now() - timedelta(minutes=minutes_ago),
    )
    if path:
        d.deployment_path = f"{ROOT}/releases/r{minutes_ago}"
    rt.store.save(d)
    return d


def test_rollback_relinks_previous_release(rt, transport, site):
    old = _finished(rt, site, 10)
    new = _finished(rt, site, 5)
    site.active_deployment_id = new.id
    rt.store.save(site)

    rt.deployments.rollback(site.id, old.id)
    assert transport.commands == [
        f"test -d {ROOT}/releases/r10",
        f"ln -sfn {ROOT}/releases/r10 {ROOT}/current",
        "service php8.3-fpm reload",
    ]
    assert rt.store.get(Site, site.id).active_deployment_id == old.id


def test_rollback_to_failed_or_pruned_release_is_rejected(rt, transport, site):
    failed = _finished(rt, site, 10, status=TaskStatus.FAILED)
    pruned = _finished(rt, site, 8, path=False)
    for d in (failed, pruned):
        with pytest.raises(ValidationError):
            rt.deployments.rollback(site.id, d.id)
    assert transport.calls == []


def test_rollback_to_active_release_is_a_conflict(rt, site):
    d = _finished(rt, site, 10)
    site.active_deployment_id = d.id
    rt.store.save(site)
    with pytest.raises(StateConflictError):
        rt.deployments.rollback(site.id, d.id)


def test_rollback_fails_when_release_is_gone(rt, transport, site):
    d = _finished(rt, site, 10)
    transport.fail_on("test -d", stderr="")
    with pytest.raises(TransportError):
        rt.deployments.rollback(site.id, d.id)
    assert rt.store.get(Site, site.id).active_deployment_id is None


def test_prune_keeps_newest_and_active(rt, transport, site):
    ds = [_finished(rt, site, m) for m in (50, 40, 30, 20, 10)]
    _finished(rt, site, 45, status=TaskStatus.FAILED)
    site.active_deployment_id = ds[0].id
    rt.store.save(site)

    result = rt.deployments.prune(site.id, keep=2)
    assert sorted(result.deleted) == sorted([ds[1].id, ds[2].id])
    assert result.failed == []
    assert transport.commands == [f"rm -rf {ROOT}/releases/r30", f"rm -rf {ROOT}/releases/r40"]
    assert rt.store.get(Deployment, ds[1].id).deployment_path is None
    assert rt.store.get(Deployment, ds[0].id).deployment_path is not None


def test_prune_reports_failed_deletions(rt, transport, site):
    ds = [_finished(rt, site, m) for m in (30, 20, 10)]
    transport.fail_on("releases/r30", stderr="Permission denied")
    result = rt.deployments.prune(site.id, keep=1)
    assert result.failed == [ds[0].id]
    assert result.deleted == [ds[1].id]
    assert rt.store.get(Deployment, ds[0].id).deployment_path is not None


def test_deploy_endpoint_and_status(client, app_rt, server):
    r = client.post(f"/servers/{server.id}/sites", json={
        "domain": "api.example.com",
        "php_version": "8.3",
        "git": {"repository": "https://github.com/acme/api.git", "branch": "main"},
    })
    assert r.status_code == 201
    site_id = r.json()["site"]["id"]
    assert "webhook_secret" not in r.json()["site"]
    assert r.json()["webhook_secret"]

    r = client.post(f"/sites/{site_id}/deployments")
    assert r.status_code == 202
    dep_id = r.json()["id"]
    assert client.post(f"/sites/{site_id}/deployments").status_code == 409

    app_rt.tasks.drain()
    status = client.get(f"/deployments/{dep_id}/status").json()
    assert status["status"] == "success"
    assert status["is_success"] is True
    listing = client.get(f"/sites/{site_id}/deployments").json()
    assert listing["active_deployment_id"] == dep_id


def test_deploy_endpoint_without_git_is_422(client, server):
    site_id = client.post(f"/servers/{server.id}/sites", json={"domain": "nogit.example.com"}).json()["site"]["id"]
    r = client.post(f"/sites/{site_id}/deployments")
    assert r.status_code == 422
    assert "git" in r.json()["errors"]
    assert client.get(f"/sites/{site_id}/deployments").json()["deployments"] == []
