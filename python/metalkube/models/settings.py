# metalkube/models/settings.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ProvisionerSettings(BaseSettings):
    """
    Pydantic settings for the provisioning machinery.
    By default, these fields map to environment variables prefixed with `METALKUBE_`.
    For example, `METALKUBE_POLL_INTERVAL_SECONDS`, `METALKUBE_TALOSCTL_PATH`, etc.
    """

    # If you set `METALKUBE_TALOSCTL_PATH=/opt/bin/talosctl`,
    # it populates talosctl_path automatically.
    model_config = SettingsConfigDict(env_prefix="METALKUBE_")

    poll_interval_seconds: float = 5.0
    ssh_connect_timeout_seconds: int = 30
    ssh_binary: str = "ssh"
    sshpass_binary: str = "sshpass"
    talosctl_path: str = "talosctl"
    talos_health_wait: str = "10s"
    k3s_install_url: str = "https://get.k3s.io"
    work_dir_parent: Optional[str] = None
