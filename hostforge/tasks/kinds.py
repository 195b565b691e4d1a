# hostforge/tasks/kinds.py
"""Per-kind command builders.

Each :class:`ResourceKind` maps to a :class:`KindSpec` of plain functions.
Jobs never branch on the kind themselves, they look their KindSpec up here.
"""
import shlex
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from hostforge.servers.models import Resource, ResourceKind, Server
from hostforge.transport.base import CommandLike, best_effort

APT = "DEBIAN_FRONTEND=noninteractive apt-get"
REDIS_CONF = "/etc/redis/redis.conf"


@dataclass
class KindContext:
    server: Server
    parent: Optional[Resource] = None
    app_user: str = "hostforge"


Builder = Callable[[Resource, KindContext], List[CommandLike]]


def _none(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return []


@dataclass
class KindSpec:
    install: Builder
    remove: Builder
    update: Builder = _none
    pause: Builder = _none
    resume: Builder = _none
    classify: Optional[Callable[[str, str], Optional[str]]] = None
    # Mutually exclusive per server among live records ("database", "cache").
    category: Optional[str] = None
    default_port: Optional[int] = None
    # The first of its kind on a server takes these flags.
    default_flags: Tuple[str, ...] = ()
    supports_update: bool = False
    # Keys an update may carry; the update builder reads each one.
    updatable: Tuple[str, ...] = ()
    supports_pause: bool = False
    label: str = ""


def write_file(path: str, content: str) -> str:
    if not content.endswith("\n"):
        content += "\n"
    return f"cat > {shlex.quote(path)} <<'HOSTFORGE_EOF'\n{content}HOSTFORGE_EOF"


def mysql_str(value: str) -> str:
    """Single-quoted MySQL string literal."""
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def pg_str(value: str) -> str:
    """Single-quoted PostgreSQL literal (standard_conforming_strings)."""
    return "'" + str(value).replace("'", "''") + "'"


def redis_conf_line(key: str, value: str) -> str:
    quoted = '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'
    return f"{key} {quoted}"


def set_conf_line(path: str, key: str, line: str) -> List[CommandLike]:
    """Drop any ``key`` line (commented or not) from ``path`` and append ``line``."""
    return [
        f"sed -i '/^#\\? *{key} /d' {path}",
        f"printf '%s\\n' {shlex.quote(line)} >> {path}",
    ]


def _pending(res: Resource, key: str, default=None):
    if key in res.pending_changes:
        return res.pending_changes[key]
    return getattr(res, key, None) or res.config.get(key, default)


# ---------------- databases ----------------
def _mysql_port(port, conf: str) -> str:
    return f"sed -i 's/^#\\?\\s*port\\s*=.*/port = {port}/' {conf} || echo 'port = {port}' >> {conf}"


def _mysql_family_install(package: str, service: str, conf: str):
    def build(res: Resource, ctx: KindContext) -> List[CommandLike]:
        pw = res.config.get("root_password", "")
        port = res.port or "3306"
        sql = f"ALTER USER 'root'@'localhost' IDENTIFIED BY {mysql_str(pw)}; FLUSH PRIVILEGES;"
        cmds: List[CommandLike] = [
            f"{APT} update -y",
            f"{APT} install -y {package}",
            _mysql_port(port, conf),
            f"systemctl enable {service}",
            f"systemctl restart {service}",
            f"mysql -u root -e {shlex.quote(sql)}",
        ]
        if res.name:
            cmds.append(f"mysql -u root -p{shlex.quote(pw)} -e {shlex.quote(f'CREATE DATABASE IF NOT EXISTS `{res.name}`;')}")
        return cmds

    return build


def _mysql_family_update(package: str, service: str, conf: str):
    def build(res: Resource, ctx: KindContext) -> List[CommandLike]:
        cmds: List[CommandLike] = [
            f"{APT} update -y",
            f"{APT} install --only-upgrade -y {package}",
        ]
        if "port" in res.pending_changes:
            cmds.append(_mysql_port(res.pending_changes["port"], conf))
        cmds.append(f"systemctl restart {service}")
        return cmds

    return build


def _mysql_family_remove(packages: str, service: str, paths: str):
    def build(res: Resource, ctx: KindContext) -> List[CommandLike]:
        return [
            best_effort(f"systemctl stop {service}"),
            f"{APT} purge -y {packages}",
            f"rm -rf {paths}",
            best_effort(f"{APT} autoremove -y"),
        ]

    return build


def _postgres_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "16"
    pw = res.config.get("root_password", "")
    port = res.port or "5432"
    conf = f"/etc/postgresql/{v}/main/postgresql.conf"
    sql = f"ALTER USER postgres WITH PASSWORD {pg_str(pw)};"
    cmds: List[CommandLike] = [
        f"{APT} update -y",
        f"{APT} install -y postgresql-common",
        "/usr/share/postgresql-common/pgdg/apt.postgresql.org.sh -y",
        f"{APT} install -y postgresql-{v}",
        f"sed -i \"s/^#\\?port = .*/port = {port}/\" {conf}",
        "systemctl enable postgresql",
        "systemctl restart postgresql",
        f"sudo -u postgres psql -p {port} -c {shlex.quote(sql)}",
    ]
    if res.name:
        cmds.append(f"sudo -u postgres createdb -p {port} {shlex.quote(res.name)}")
    return cmds


def _postgres_update(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "16"
    cmds: List[CommandLike] = [
        f"{APT} update -y",
        f"{APT} install --only-upgrade -y postgresql-{v}",
    ]
    if "port" in res.pending_changes:
        port = res.pending_changes["port"]
        cmds.append(f"sed -i \"s/^#\\?port = .*/port = {port}/\" /etc/postgresql/{v}/main/postgresql.conf")
    cmds.append("systemctl restart postgresql")
    return cmds


def _postgres_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [
        best_effort("systemctl stop postgresql"),
        f"{APT} purge -y 'postgresql*'",
        "rm -rf /etc/postgresql /var/lib/postgresql",
        best_effort(f"{APT} autoremove -y"),
    ]


def _redis_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    port = res.port or "6379"
    cmds: List[CommandLike] = [
        f"{APT} update -y",
        f"{APT} install -y redis-server",
        f"sed -i 's/^port .*/port {port}/' {REDIS_CONF}",
    ]
    pw = res.config.get("root_password")
    if pw:
        cmds += set_conf_line(REDIS_CONF, "requirepass", redis_conf_line("requirepass", pw))
    cmds += ["systemctl enable redis-server", "systemctl restart redis-server"]
    return cmds


def _redis_update(res: Resource, ctx: KindContext) -> List[CommandLike]:
    changes = res.pending_changes
    cmds: List[CommandLike] = [
        f"{APT} update -y",
        f"{APT} install --only-upgrade -y redis-server",
    ]
    if "port" in changes:
        cmds.append(f"sed -i 's/^port .*/port {changes['port']}/' {REDIS_CONF}")
    if "maxmemory" in changes:
        cmds += set_conf_line(REDIS_CONF, "maxmemory", f"maxmemory {changes['maxmemory']}")
    cmds.append("systemctl restart redis-server")
    return cmds


def _database_classify(command: str, stderr: str) -> Optional[str]:
    if "Unable to locate package" in stderr or "has no installation candidate" in stderr:
        return "The requested database version is not available for this server's operating system."
    if "Access denied" in stderr:
        return "Database authentication failed. Verify the root password."
    return None


# ---------------- database users ----------------
def _db_user_sql(res: Resource, ctx: KindContext, op: str) -> List[CommandLike]:
    # Names are validated to [A-Za-z0-9_-] on request; passwords are escaped per engine.
    parent = ctx.parent
    user = res.name or ""
    pw = _pending(res, "password", "")
    databases = _pending(res, "databases", []) or []
    if parent is not None and parent.kind == ResourceKind.POSTGRESQL:
        port = parent.port or "5432"
        if op == "remove":
            stmts = [f'DROP ROLE IF EXISTS "{user}";']
        elif op == "update":
            stmts = [f'ALTER ROLE "{user}" WITH PASSWORD {pg_str(pw)};']
        else:
            stmts = [f'CREATE ROLE "{user}" WITH LOGIN PASSWORD {pg_str(pw)};']
        stmts += [f'GRANT ALL PRIVILEGES ON DATABASE "{db}" TO "{user}";' for db in databases if op != "remove"]
        return [f"sudo -u postgres psql -p {port} -c {shlex.quote(s)}" for s in stmts]

    root_pw = parent.config.get("root_password", "") if parent is not None else ""
    account = f"{mysql_str(user)}@{mysql_str(res.config.get('host', '%'))}"
    if op == "remove":
        stmts = [f"DROP USER IF EXISTS {account};"]
    elif op == "update":
        stmts = [f"ALTER USER {account} IDENTIFIED BY {mysql_str(pw)};"]
    else:
        stmts = [f"CREATE USER {account} IDENTIFIED BY {mysql_str(pw)};"]
    if op != "remove":
        stmts += [f"GRANT ALL PRIVILEGES ON `{db}`.* TO {account};" for db in databases]
        stmts.append("FLUSH PRIVILEGES;")
    return [f"mysql -u root -p{shlex.quote(root_pw)} -e {shlex.quote(' '.join(stmts))}"]


# ---------------- runtimes ----------------
def _php_packages(v: str) -> str:
    exts = ["fpm", "cli", "common", "mysql", "pgsql", "redis", "mbstring", "xml", "curl", "zip", "bcmath", "intl", "gd"]
    return " ".join(f"php{v}-{e}" for e in exts)


def _php_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "8.3"
    cmds: List[CommandLike] = [
        f"{APT} install -y software-properties-common",
        "add-apt-repository -y ppa:ondrej/php",
        f"{APT} update -y",
        f"{APT} install -y {_php_packages(v)}",
        f"systemctl enable php{v}-fpm",
        f"systemctl restart php{v}-fpm",
    ]
    if res.config.get("claims_default"):
        cmds += [
            f"update-alternatives --set php /usr/bin/php{v}",
            "command -v composer || (curl -sS https://getcomposer.org/installer | php -- --install-dir=/usr/local/bin --filename=composer)",
        ]
    return cmds


def _php_update(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "8.3"
    return [
        f"{APT} update -y",
        f"{APT} install --only-upgrade -y {_php_packages(v)}",
        f"systemctl restart php{v}-fpm",
    ]


def _php_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "8.3"
    return [
        best_effort(f"systemctl stop php{v}-fpm"),
        f"{APT} purge -y 'php{v}-*'",
        best_effort(f"{APT} autoremove -y"),
    ]


def _node_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "22"
    cmds: List[CommandLike] = [
        "command -v n || (curl -fsSL https://raw.githubusercontent.com/tj/n/master/bin/n -o /usr/local/bin/n && chmod +x /usr/local/bin/n)",
        f"n install {shlex.quote(v)}",
    ]
    if res.config.get("claims_default"):
        cmds.append(f"n {shlex.quote(v)}")
    return cmds


def _node_update(res: Resource, ctx: KindContext) -> List[CommandLike]:
    v = res.version or "22"
    return [f"n install {shlex.quote(v)}"]


def _node_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [f"n rm {shlex.quote(res.version or '22')}"]


# ---------------- firewall ----------------
def _firewall_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [
        f"{APT} install -y ufw",
        "ufw default deny incoming",
        "ufw default allow outgoing",
        f"ufw allow {ctx.server.ssh_port}/tcp",
        "ufw allow 80/tcp",
        "ufw allow 443/tcp",
        "ufw --force enable",
    ]


def _firewall_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return ["ufw --force disable"]


def _ufw_rule(res: Resource) -> str:
    action = res.config.get("rule_type", "allow")
    proto = res.config.get("protocol", "tcp")
    port = (res.port or "").replace("-", ":")
    source = res.config.get("from_ip")
    if source:
        rule = f"{action} from {shlex.quote(source)} to any"
        if port:
            rule += f" port {port} proto {proto}"
        return rule
    return f"{action} {port}/{proto}" if port else action


def _firewall_rule_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [f"ufw {_ufw_rule(res)}", "ufw reload"]


def _firewall_rule_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [f"ufw delete {_ufw_rule(res)}", "ufw reload"]


# ---------------- scheduled tasks ----------------
FREQUENCIES = {
    "minutely": "* * * * *",
    "hourly": "0 * * * *",
    "daily": "0 0 * * *",
    "weekly": "0 0 * * 0",
    "monthly": "0 0 1 * *",
}


def cron_expression(res: Resource) -> str:
    freq = _pending(res, "frequency", "daily")
    if freq == "custom":
        return _pending(res, "cron_expression", "* * * * *")
    return FREQUENCIES.get(freq, FREQUENCIES["daily"])


def _cron_path(res: Resource) -> str:
    return f"/etc/cron.d/hostforge-task-{res.id}"


def _cron_write(res: Resource, ctx: KindContext) -> List[CommandLike]:
    user = _pending(res, "user") or ctx.app_user
    command = _pending(res, "command", "")
    line = f"{cron_expression(res)} {user} {command} >> /var/log/hostforge-task-{res.id}.log 2>&1"
    return [write_file(_cron_path(res), line), f"chmod 644 {_cron_path(res)}"]


def _cron_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [f"rm -f {_cron_path(res)}"]


# ---------------- supervisor tasks ----------------
def _program(res: Resource) -> str:
    return f"hostforge-{res.id}"


def _supervisor_conf(res: Resource, ctx: KindContext) -> str:
    command = _pending(res, "command", "")
    directory = _pending(res, "working_directory", None) or f"/home/{ctx.app_user}"
    processes = int(_pending(res, "processes", 1) or 1)
    return "\n".join([
        f"[program:{_program(res)}]",
        f"command={command}",
        f"directory={directory}",
        f"user={_pending(res, 'user') or ctx.app_user}",
        f"numprocs={processes}",
        "process_name=%(program_name)s_%(process_num)02d",
        "autostart=true",
        "autorestart=true",
        "stopasgroup=true",
        "killasgroup=true",
        "redirect_stderr=true",
        f"stdout_logfile=/var/log/supervisor/{_program(res)}.log",
    ])


def _supervisor_write(res: Resource, ctx: KindContext) -> List[CommandLike]:
    path = f"/etc/supervisor/conf.d/{_program(res)}.conf"
    return [
        write_file(path, _supervisor_conf(res, ctx)),
        "supervisorctl reread",
        "supervisorctl update",
        f"supervisorctl restart '{_program(res)}:*'",
    ]


def _supervisor_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [
        best_effort(f"supervisorctl stop '{_program(res)}:*'"),
        f"rm -f /etc/supervisor/conf.d/{_program(res)}.conf",
        "supervisorctl reread",
        "supervisorctl update",
    ]


def _supervisor_pause(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [f"supervisorctl stop '{_program(res)}:*'"]


def _supervisor_resume(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [f"supervisorctl start '{_program(res)}:*'"]


# ---------------- reverse proxy ----------------
DEFAULT_NGINX_SITE = """server {
    listen 80 default_server;
    listen [::]:80 default_server;
    root /var/www/html;
    index index.php index.html;
    server_name _;

    location / {
        try_files $uri $uri/ /index.php?$query_string;
    }

    location ~ \\.php$ {
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:/var/run/php/php%(php)s-fpm.sock;
    }
}"""


def _nginx_install(res: Resource, ctx: KindContext) -> List[CommandLike]:
    php = res.config.get("php_version", "8.3")
    return [
        f"{APT} install -y nginx",
        "mkdir -p /var/www/html",
        write_file("/etc/nginx/sites-available/default", DEFAULT_NGINX_SITE % {"php": php}),
        "ln -sf /etc/nginx/sites-available/default /etc/nginx/sites-enabled/default",
        "nginx -t",
        "systemctl enable nginx",
        "systemctl reload nginx || systemctl restart nginx",
    ]


def _nginx_remove(res: Resource, ctx: KindContext) -> List[CommandLike]:
    return [best_effort("systemctl stop nginx"), f"{APT} purge -y nginx nginx-common"]


KINDS: Dict[ResourceKind, KindSpec] = {
    ResourceKind.MYSQL: KindSpec(
        install=_mysql_family_install("mysql-server", "mysql", "/etc/mysql/mysql.conf.d/mysqld.cnf"),
        update=_mysql_family_update("mysql-server", "mysql", "/etc/mysql/mysql.conf.d/mysqld.cnf"),
        remove=_mysql_family_remove("mysql-server mysql-client mysql-common", "mysql", "/etc/mysql /var/lib/mysql"),
        classify=_database_classify,
        category="database", default_port=3306, supports_update=True, updatable=("port",), label="MySQL",
    ),
    ResourceKind.MARIADB: KindSpec(
        install=_mysql_family_install("mariadb-server", "mariadb", "/etc/mysql/mariadb.conf.d/50-server.cnf"),
        update=_mysql_family_update("mariadb-server", "mariadb", "/etc/mysql/mariadb.conf.d/50-server.cnf"),
        remove=_mysql_family_remove("mariadb-server mariadb-client mariadb-common", "mariadb", "/etc/mysql /var/lib/mysql"),
        classify=_database_classify,
        category="database", default_port=3306, supports_update=True, updatable=("port",), label="MariaDB",
    ),
    ResourceKind.POSTGRESQL: KindSpec(
        install=_postgres_install, update=_postgres_update, remove=_postgres_remove,
        classify=_database_classify,
        category="database", default_port=5432, supports_update=True, updatable=("port",), label="PostgreSQL",
    ),
    ResourceKind.REDIS: KindSpec(
        install=_redis_install,
        update=_redis_update,
        remove=_mysql_family_remove("redis-server", "redis-server", "/etc/redis /var/lib/redis"),
        classify=_database_classify,
        category="cache", default_port=6379, supports_update=True, updatable=("port", "maxmemory"), label="Redis",
    ),
    ResourceKind.DATABASE_USER: KindSpec(
        install=lambda r, c: _db_user_sql(r, c, "install"),
        update=lambda r, c: _db_user_sql(r, c, "update"),
        remove=lambda r, c: _db_user_sql(r, c, "remove"),
        classify=_database_classify, supports_update=True, updatable=("password", "databases"), label="database user",
    ),
    ResourceKind.PHP: KindSpec(
        install=_php_install, update=_php_update, remove=_php_remove,
        default_flags=("is_cli_default", "is_site_default"), supports_update=True, label="PHP",
    ),
    ResourceKind.NODE: KindSpec(
        install=_node_install, update=_node_update, remove=_node_remove,
        default_flags=("is_default",), supports_update=True, label="Node.js",
    ),
    ResourceKind.FIREWALL: KindSpec(install=_firewall_install, remove=_firewall_remove, label="firewall"),
    ResourceKind.FIREWALL_RULE: KindSpec(install=_firewall_rule_install, remove=_firewall_rule_remove, label="firewall rule"),
    ResourceKind.SCHEDULED_TASK: KindSpec(
        install=_cron_write, update=_cron_write, remove=_cron_remove,
        pause=_cron_remove, resume=_cron_write,
        supports_update=True, supports_pause=True, label="scheduled task",
        updatable=("command", "frequency", "cron_expression", "user"),
    ),
    ResourceKind.SUPERVISOR_TASK: KindSpec(
        install=_supervisor_write, update=_supervisor_write, remove=_supervisor_remove,
        pause=_supervisor_pause, resume=_supervisor_resume,
        supports_update=True, supports_pause=True, label="supervisor task",
        updatable=("command", "working_directory", "processes", "user"),
    ),
    ResourceKind.REVERSE_PROXY: KindSpec(install=_nginx_install, remove=_nginx_remove, label="Nginx"),
}

LISTENING_KINDS = tuple(k for k, spec in KINDS.items() if spec.default_port) + (ResourceKind.FIREWALL_RULE,)


def spec_for(kind: ResourceKind) -> KindSpec:
    return KINDS[kind]
