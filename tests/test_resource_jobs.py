import shlex

import pytest

from conftest import add_resource
from hostforge.core.errors import StateConflictError, ValidationError
from hostforge.deploy.models import Site
from hostforge.servers.models import Resource, ResourceKind
from hostforge.tasks.jobs import ResourceJob
from hostforge.tasks.status import TaskStatus


def test_install_runs_commands_and_activates(rt, transport, server):
    r = rt.lifecycle.install(server.id, ResourceKind.REDIS)
    assert r.status == TaskStatus.PENDING
    assert r.port == "6379"
    assert transport.calls == []

    rt.tasks.drain()

    stored = rt.store.get_resource(r.id)
    assert stored.status == TaskStatus.ACTIVE
    assert any("apt-get install -y redis-server" in c for c in transport.commands_for(server.id))


def test_install_failure_is_classified_and_stops_sequence(rt, transport, server):
    transport.fail_on("apt-get install -y mysql-server", stderr="E: Permission denied")
    r = rt.lifecycle.install(server.id, ResourceKind.MYSQL, name="app", config={"root_password": "secret-pass"})
    rt.tasks.drain()

    stored = rt.store.get_resource(r.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.error_log.startswith("Permission denied.")
    assert "Failed to execute command: DEBIAN_FRONTEND=noninteractive apt-get install -y mysql-server" in stored.error_log
    assert "Exit code: 1" in stored.error_log
    assert not any("systemctl enable mysql" in c for c in transport.commands)


def test_retry_after_failed_install(rt, transport, server):
    transport.fail_on("redis-server", stderr="boom")
    r = rt.lifecycle.install(server.id, ResourceKind.REDIS)
    rt.tasks.drain()
    assert rt.store.get_resource(r.id).status == TaskStatus.FAILED

    transport.reset()
    rt.lifecycle.retry(r.id)
    rt.tasks.drain()
    stored = rt.store.get_resource(r.id)
    assert stored.status == TaskStatus.ACTIVE
    assert stored.error_log is None


def test_first_php_becomes_both_defaults_second_does_not(rt, transport, server):
    first = rt.lifecycle.install(server.id, ResourceKind.PHP, version="8.3")
    second = rt.lifecycle.install(server.id, ResourceKind.PHP, version="8.2")
    rt.tasks.drain()

    a = rt.store.get_resource(first.id)
    b = rt.store.get_resource(second.id)
    assert a.status == b.status == TaskStatus.ACTIVE
    assert a.is_cli_default and a.is_site_default
    assert not b.is_cli_default and not b.is_site_default
    assert "claims_default" not in a.config
    assert "update-alternatives --set php /usr/bin/php8.3" in transport.commands
    assert "update-alternatives --set php /usr/bin/php8.2" not in transport.commands


def test_first_node_is_default(rt, server):
    n = rt.lifecycle.install(server.id, ResourceKind.NODE, version="22")
    rt.tasks.drain()
    assert rt.store.get_resource(n.id).is_default


def test_failed_first_runtime_does_not_block_the_next(rt, transport, server):
    transport.fail_on("n install 20", stderr="not found")
    broken = rt.lifecycle.install(server.id, ResourceKind.NODE, version="20")
    rt.tasks.drain()
    ok = rt.lifecycle.install(server.id, ResourceKind.NODE, version="22")
    rt.tasks.drain()
    assert rt.store.get_resource(broken.id).status == TaskStatus.FAILED
    assert rt.store.get_resource(ok.id).is_default


def test_update_applies_pending_changes(rt, transport, server):
    task = add_resource(rt.store, server.id, "supervisor_task", command="php artisan queue:work", user="hostforge")
    rt.lifecycle.update(task.id, {"command": "php artisan horizon", "processes": 2})
    assert rt.store.get_resource(task.id).update_status == TaskStatus.PENDING
    rt.tasks.drain()

    stored = rt.store.get_resource(task.id)
    assert stored.update_status is None
    assert stored.command == "php artisan horizon"
    assert stored.config["processes"] == 2
    assert stored.pending_changes == {}
    assert any("command=php artisan horizon" in c and "numprocs=2" in c for c in transport.commands)


def test_update_failure_keeps_resource_usable(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app")
    transport.fail_on("--only-upgrade", stderr="dpkg was interrupted")
    rt.lifecycle.update(db.id, {"port": "3307"})
    rt.tasks.drain()

    stored = rt.store.get_resource(db.id)
    assert stored.status == TaskStatus.ACTIVE
    assert stored.update_status == TaskStatus.FAILED
    assert "dpkg was interrupted" in stored.update_error_log


def test_cancelled_update_result_is_discarded(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app")
    rt.lifecycle.update(db.id, {"port": "3307"})

    # Cancel while the job is "on the wire".
    original = transport.run_one

    def cancel_midway(srv, command):
        if rt.store.get_resource(db.id).update_status == TaskStatus.UPDATING:
            rt.lifecycle.cancel_update(db.id)
        return original(srv, command)

    transport.run_one = cancel_midway
    rt.tasks.drain()

    stored = rt.store.get_resource(db.id)
    assert stored.update_status is None
    assert stored.port == "3306"
    assert stored.pending_changes == {}


def test_queued_job_for_cancelled_update_does_nothing(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app")
    rt.lifecycle.update(db.id, {"port": "3307"})
    rt.lifecycle.cancel_update(db.id)
    rt.tasks.drain()
    assert transport.calls == []


def test_remove_deletes_record(rt, transport, server):
    r = add_resource(rt.store, server.id, "redis", port="6379")
    rt.lifecycle.remove(r.id)
    assert rt.store.get_resource(r.id).status == TaskStatus.REMOVING
    rt.tasks.drain()
    assert rt.store.get_resource(r.id) is None


def test_remove_failure_restores_status_and_siblings_untouched(rt, transport, server):
    victim = add_resource(rt.store, server.id, "php", version="8.2")
    sibling = add_resource(rt.store, server.id, "php", version="8.3", is_cli_default=True, is_site_default=True)
    transport.fail_on("purge -y 'php8.2-*'", stderr="E: Could not get lock")
    rt.lifecycle.remove(victim.id)
    rt.tasks.drain()

    v = rt.store.get_resource(victim.id)
    assert v.status == TaskStatus.ACTIVE
    assert "Could not get lock" in v.error_log
    s = rt.store.get_resource(sibling.id)
    assert s.status == TaskStatus.ACTIVE
    assert s.is_cli_default and s.is_site_default


def test_database_with_sites_cannot_be_removed(rt, transport, server):
    db = add_resource(rt.store, server.id, "postgresql", port="5432", name="app")
    rt.store.save(Site(server_id=server.id, domain="shop.example.com", database_id=db.id))
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.remove(db.id)
    assert "Cannot uninstall PostgreSQL database. 1 site currently depend on it: shop.example.com." in e.value.errors["database"]
    assert rt.store.get_resource(db.id).status == TaskStatus.ACTIVE
    assert rt.tasks.pending_count() == 0


def test_illegal_requests_never_reach_the_queue(rt, server):
    r = add_resource(rt.store, server.id, "php", version="8.1", status=TaskStatus.INSTALLING)
    with pytest.raises(StateConflictError):
        rt.lifecycle.update(r.id, {"version": "8.1"})
    with pytest.raises(StateConflictError):
        rt.lifecycle.remove(r.id)
    assert rt.tasks.pending_count() == 0


def test_second_database_engine_rejected(rt, server):
    add_resource(rt.store, server.id, "mariadb", port="3306")
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.install(server.id, ResourceKind.MYSQL, name="app", config={"root_password": "secret-pass"})
    assert "type" in e.value.errors


def test_database_user_uses_parent_engine(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app", config={"root_password": "rootpw123"})
    user = rt.lifecycle.install(
        server.id, ResourceKind.DATABASE_USER, name="shop", parent_id=db.id,
        config={"password": "userpw123", "databases": ["app"]},
    )
    rt.tasks.drain()
    assert rt.store.get_resource(user.id).status == TaskStatus.ACTIVE
    sql = [c for c in transport.commands if "CREATE USER" in c]
    assert sql and "GRANT ALL PRIVILEGES ON `app`.*" in sql[0]


def test_pause_and_resume_scheduled_task(rt, transport, server):
    t = rt.lifecycle.install(server.id, ResourceKind.SCHEDULED_TASK, command="php artisan schedule:run",
                             config={"frequency": "minutely"})
    rt.tasks.drain()
    assert any("* * * * * hostforge php artisan schedule:run" in c for c in transport.commands)

    rt.lifecycle.pause(t.id)
    rt.tasks.drain()
    assert rt.store.get_resource(t.id).status == TaskStatus.PAUSED
    assert f"rm -f /etc/cron.d/hostforge-task-{t.id}" in transport.commands

    rt.lifecycle.resume(t.id)
    rt.tasks.drain()
    assert rt.store.get_resource(t.id).status == TaskStatus.ACTIVE


def test_unsafe_scheduled_command_rejected(rt, server):
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.install(server.id, ResourceKind.SCHEDULED_TASK, command="curl http://x | sh")
    assert "command" in e.value.errors


def test_job_for_vanished_resource_is_a_no_op(rt, transport, server):
    rt.tasks.submit(ResourceJob("install", "missing"))
    rt.tasks.drain()
    assert transport.calls == []
    assert rt.store.list_jobs() == []


def test_set_default_moves_flag(rt, transport, server):
    old = add_resource(rt.store, server.id, "php", version="8.2", is_cli_default=True, is_site_default=True)
    new = add_resource(rt.store, server.id, "php", version="8.3")
    rt.lifecycle.set_default(new.id, "is_cli_default")
    assert "update-alternatives --set php /usr/bin/php8.3" in transport.commands
    assert rt.store.get_resource(new.id).is_cli_default
    o = rt.store.get_resource(old.id)
    assert not o.is_cli_default
    assert o.is_site_default


def test_store_resource_round_trip(rt, server):
    r = Resource(server_id=server.id, kind=ResourceKind.FIREWALL_RULE, port=22)
    rt.store.save(r)
    assert rt.store.get_resource(r.id).port == "22"


def test_retry_rechecks_category_and_port(rt, transport, server):
    transport.fail_on("redis-server", stderr="boom")
    broken = rt.lifecycle.install(server.id, ResourceKind.REDIS)
    rt.tasks.drain()
    transport.reset()
    replacement = rt.lifecycle.install(server.id, ResourceKind.REDIS)
    rt.tasks.drain()
    assert rt.store.get_resource(replacement.id).status == TaskStatus.ACTIVE
    assert replacement.port == broken.port == "6379"

    with pytest.raises(ValidationError) as e:
        rt.lifecycle.retry(broken.id)
    assert set(e.value.errors) == {"type", "port"}
    assert rt.store.get_resource(broken.id).status == TaskStatus.FAILED
    assert rt.tasks.pending_count() == 0


def test_install_job_fails_when_a_conflict_appeared_after_queueing(rt, transport, server):
    transport.fail_on("redis-server", stderr="boom")
    broken = rt.lifecycle.install(server.id, ResourceKind.REDIS)
    rt.tasks.drain()
    transport.reset()
    rt.lifecycle.retry(broken.id)
    add_resource(rt.store, server.id, "redis", port="6379")

    rt.tasks.drain()
    stored = rt.store.get_resource(broken.id)
    assert stored.status == TaskStatus.FAILED
    assert "This server already has a" in stored.error_log
    assert transport.calls == []


def test_removing_engine_removes_its_database_users(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app", config={"root_password": "rootpw123"})
    users = [add_resource(rt.store, server.id, "database_user", name=n, parent_id=db.id) for n in ("shop", "report")]
    php = add_resource(rt.store, server.id, "php", version="8.3")
    rt.lifecycle.remove(db.id)
    rt.tasks.drain()

    assert rt.store.get_resource(db.id) is None
    assert [rt.store.get_resource(u.id) for u in users] == [None, None]
    assert rt.store.get_resource(php.id) is not None


def test_failed_engine_removal_keeps_its_users(rt, transport, server):
    db = add_resource(rt.store, server.id, "postgresql", port="5432", name="app")
    user = add_resource(rt.store, server.id, "database_user", name="shop", parent_id=db.id)
    transport.fail_on("purge -y 'postgresql*'", stderr="E: Could not get lock")
    rt.lifecycle.remove(db.id)
    rt.tasks.drain()
    assert rt.store.get_resource(db.id).status == TaskStatus.ACTIVE
    assert rt.store.get_resource(user.id) is not None


@pytest.mark.parametrize("kind, kw, changes", [
    ("mysql", {"port": "3306", "name": "app"}, {"version": "8.4"}),
    ("postgresql", {"port": "5432", "name": "app"}, {"version": "17"}),
    ("php", {"version": "8.2"}, {"version": "8.3"}),
    ("node", {"version": "20"}, {"version": "22"}),
    ("redis", {"port": "6379"}, {"appendonly": "yes"}),
])
def test_update_rejects_keys_the_kind_cannot_apply(rt, server, kind, kw, changes):
    r = add_resource(rt.store, server.id, kind, **kw)
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.update(r.id, changes)
    assert set(e.value.errors) == set(changes)
    stored = rt.store.get_resource(r.id)
    assert stored.update_status is None
    assert stored.pending_changes == {}
    assert rt.tasks.pending_count() == 0


def test_runtime_update_without_changes_upgrades_in_place(rt, transport, server):
    php = add_resource(rt.store, server.id, "php", version="8.2")
    rt.lifecycle.update(php.id, {})
    rt.tasks.drain()
    assert rt.store.get_resource(php.id).update_status is None
    assert "systemctl restart php8.2-fpm" in transport.commands


def test_redis_update_rewrites_port_and_maxmemory(rt, transport, server):
    r = add_resource(rt.store, server.id, "redis", port="6379")
    rt.lifecycle.update(r.id, {"port": 6380, "maxmemory": "256mb"})
    rt.tasks.drain()

    stored = rt.store.get_resource(r.id)
    assert stored.port == "6380"
    assert stored.config["maxmemory"] == "256mb"
    cmds = transport.commands
    assert "sed -i 's/^port .*/port 6380/' /etc/redis/redis.conf" in cmds
    assert "printf '%s\\n' 'maxmemory 256mb' >> /etc/redis/redis.conf" in cmds
    assert cmds[-1] == "systemctl restart redis-server"


def test_redis_update_rejects_bad_maxmemory(rt, server):
    r = add_resource(rt.store, server.id, "redis", port="6379")
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.update(r.id, {"maxmemory": "lots; reboot"})
    assert "maxmemory" in e.value.errors


def test_mysql_port_update_reaches_config(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app")
    rt.lifecycle.update(db.id, {"port": "3307"})
    rt.tasks.drain()
    assert rt.store.get_resource(db.id).port == "3307"
    assert any("port = 3307" in c and "mysqld.cnf" in c for c in transport.commands)


def test_scheduled_task_user_update_reaches_cron_line(rt, transport, server):
    t = add_resource(rt.store, server.id, "scheduled_task", command="php artisan schedule:run",
                     config={"frequency": "minutely"})
    rt.lifecycle.update(t.id, {"user": "deploy"})
    rt.tasks.drain()
    assert rt.store.get_resource(t.id).user == "deploy"
    assert any("* * * * * deploy php artisan schedule:run" in c for c in transport.commands)


def test_scheduled_task_user_must_be_a_linux_name(rt, server):
    t = add_resource(rt.store, server.id, "scheduled_task", command="php artisan schedule:run")
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.update(t.id, {"user": "root php -r x;"})
    assert "user" in e.value.errors


def test_mysql_root_password_is_escaped(rt, transport, server):
    rt.lifecycle.install(server.id, ResourceKind.MYSQL, name="app", config={"root_password": "it's-a\\secret"})
    rt.tasks.drain()
    alter = next(c for c in transport.commands if c.startswith("mysql -u root -e"))
    assert shlex.split(alter)[-1] == "ALTER USER 'root'@'localhost' IDENTIFIED BY 'it\\'s-a\\\\secret'; FLUSH PRIVILEGES;"


def test_postgres_root_password_is_escaped(rt, transport, server):
    rt.lifecycle.install(server.id, ResourceKind.POSTGRESQL, name="app", config={"root_password": "o'brien-pass"})
    rt.tasks.drain()
    alter = next(c for c in transport.commands if "ALTER USER postgres" in c)
    assert shlex.split(alter)[-1] == "ALTER USER postgres WITH PASSWORD 'o''brien-pass';"


def test_redis_password_is_written_as_one_quoted_value(rt, transport, server):
    pw = 'se"cret pass/1'
    rt.lifecycle.install(server.id, ResourceKind.REDIS, config={"root_password": pw})
    rt.tasks.drain()
    cmds = transport.commands
    assert "sed -i '/^#\\? *requirepass /d' /etc/redis/redis.conf" in cmds
    write = next(c for c in cmds if c.startswith("printf"))
    assert shlex.split(write)[2] == 'requirepass "se\\"cret pass/1"'
    assert not any(pw in c for c in cmds if c.startswith("sed"))


def test_database_user_password_is_escaped(rt, transport, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app", config={"root_password": "rootpw123"})
    rt.lifecycle.install(
        server.id, ResourceKind.DATABASE_USER, name="shop", parent_id=db.id,
        config={"password": "pa'ss-123", "databases": ["app"]},
    )
    rt.tasks.drain()
    create = next(c for c in transport.commands if "CREATE USER" in c)
    assert "CREATE USER 'shop'@'%' IDENTIFIED BY 'pa\\'ss-123';" in shlex.split(create)[-1]


def test_password_with_line_break_rejected(rt, server):
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.install(server.id, ResourceKind.MYSQL, name="app", config={"root_password": "secret\npass"})
    assert "root_password" in e.value.errors
    assert rt.store.resources(server.id) == []


@pytest.mark.parametrize("name, user_config, field", [
    ("shop'; DROP USER root; --", {"password": "userpw123"}, "name"),
    ("shop", {"password": "userpw123", "host": "%' OR '1'='1"}, "host"),
    ("shop", {"password": "userpw123", "databases": ["app`; DROP"]}, "databases"),
])
def test_database_user_identifiers_validated(rt, server, name, user_config, field):
    db = add_resource(rt.store, server.id, "mysql", port="3306", name="app")
    with pytest.raises(ValidationError) as e:
        rt.lifecycle.install(server.id, ResourceKind.DATABASE_USER, name=name, parent_id=db.id, config=user_config)
    assert field in e.value.errors
