import shlex
from typing import Optional

from hostforge.servers.models import Server


def render_script(server: Server, step_url: str, app_user: str, public_key: Optional[str] = None) -> str:
    """Shell script the host runs once, as root, right after it boots.

    It reports steps 1-3 through ``step_url`` and leaves the rest to us.
    Reporting uses ``success`` for a finished step, the callback reads it as
    ``completed``.
    """
    key = (public_key or "").strip()
    q_url = shlex.quote(step_url)
    q_key = shlex.quote(key)
    q_pw = shlex.quote(server.root_password)
    port = int(server.ssh_port)

    return f"""#!/bin/bash
set -euo pipefail

export DEBIAN_FRONTEND=noninteractive

CALLBACK_STEP_URL={q_url}
APP_USER={shlex.quote(app_user)}
SSH_PORT={port}
PUBLIC_KEY={q_key}
CURRENT_STEP=1

notify_step() {{
    local step="$1"
    local status="$2"
    curl -fsS -X POST -H "Content-Type: application/json" \\
        --retry 3 --retry-delay 2 \\
        -d "{{\\"step\\": $step, \\"status\\": \\"$status\\"}}" \\
        "$CALLBACK_STEP_URL" > /dev/null || true
}}

on_error() {{
    notify_step "$CURRENT_STEP" "failed"
}}
trap on_error ERR

# ---- step 1: the host is up and reachable ----
notify_step 1 "success"

# ---- step 2: base packages ----
CURRENT_STEP=2
notify_step 2 "installing"
apt-get update -y
apt-get install -y curl git unzip zip ca-certificates software-properties-common ufw fail2ban
timedatectl set-timezone UTC || true
apt-get install -y systemd-timesyncd || true
timedatectl set-ntp true || true
notify_step 2 "success"

# ---- step 3: users and SSH ----
CURRENT_STEP=3
notify_step 3 "installing"
echo "root:"{q_pw} | chpasswd

if ! id "$APP_USER" > /dev/null 2>&1; then
    useradd -m -s /bin/bash "$APP_USER"
fi
usermod -aG www-data "$APP_USER"

for home in /root "/home/$APP_USER"; do
    mkdir -p "$home/.ssh"
    chmod 700 "$home/.ssh"
    touch "$home/.ssh/authorized_keys"
    if [ -n "$PUBLIC_KEY" ] && ! grep -qF "$PUBLIC_KEY" "$home/.ssh/authorized_keys"; then
        echo "$PUBLIC_KEY" >> "$home/.ssh/authorized_keys"
    fi
    chmod 600 "$home/.ssh/authorized_keys"
done
chown -R "$APP_USER:$APP_USER" "/home/$APP_USER/.ssh"

if [ ! -f "/home/$APP_USER/.ssh/id_rsa" ]; then
    sudo -u "$APP_USER" ssh-keygen -t rsa -b 4096 -N "" -f "/home/$APP_USER/.ssh/id_rsa"
fi

sed -i "s/^#\\?Port .*/Port $SSH_PORT/" /etc/ssh/sshd_config
sed -i "s/^#\\?PasswordAuthentication .*/PasswordAuthentication no/" /etc/ssh/sshd_config
sed -i "s/^#\\?PermitRootLogin .*/PermitRootLogin prohibit-password/" /etc/ssh/sshd_config
systemctl restart ssh || systemctl restart sshd
systemctl enable fail2ban
systemctl restart fail2ban
notify_step 3 "success"
"""
