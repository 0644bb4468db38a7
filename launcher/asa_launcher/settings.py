from __future__ import annotations
import os
from pathlib import Path
from typing import List
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModPolicyRule(BaseModel):
    """Naming-convention default: servers whose name matches `pattern` get `mods` (and optionally no shared mods)."""
    pattern: str
    mods: List[int] = Field(default_factory=list)
    exclude_shared: bool = True


def _default_platform() -> str:
    return "windows" if os.name == "nt" else "posix"


class Settings(BaseSettings):
    base_path: Path = Field(default=Path("/srv/asa"), alias="ASA_BASE_PATH")
    steamcmd_path: Path = Field(default=Path("/steamcmd/steamcmd.sh"), alias="STEAMCMD_PATH")

    asa_app_id: int = Field(default=2430930, alias="ASA_APP_ID")
    server_executable: str = Field(default="ArkAscendedServer.exe", alias="SERVER_EXECUTABLE")
    skip_install: bool = Field(default=False, alias="SKIP_INSTALL")
    install_timeout_seconds: float = Field(default=900.0, alias="INSTALL_TIMEOUT_SECONDS")
    install_lock_timeout_seconds: float = Field(default=1800.0, alias="INSTALL_LOCK_TIMEOUT_SECONDS")
    install_retries: int = Field(default=3, ge=1, alias="INSTALL_RETRIES")
    install_retry_seconds: float = Field(default=30.0, ge=0, alias="INSTALL_RETRY_SECONDS")
    # download steamcmd into STEAMCMD_PATH when no install is found
    steamcmd_auto_install: bool = Field(default=True, alias="STEAMCMD_AUTO_INSTALL")
    steamcmd_url: str = Field(default="", alias="STEAMCMD_URL")

    script_platform: str = Field(default_factory=_default_platform, alias="SCRIPT_PLATFORM")
    dynamic_config_url: str = Field(default="", alias="DYNAMIC_CONFIG_URL")
    # posix only: ASA ships Windows binaries, so the launch script goes through a compat layer
    launch_wrapper: str = Field(default="wine", alias="LAUNCH_WRAPPER")

    rcon_host: str = Field(default="127.0.0.1", alias="RCON_HOST")
    rcon_connect_timeout: float = Field(default=5.0, alias="RCON_CONNECT_TIMEOUT")
    rcon_read_timeout: float = Field(default=10.0, alias="RCON_READ_TIMEOUT")
    rcon_day_command: str = Field(default="GetDay", alias="RCON_DAY_COMMAND")

    stop_timeout_seconds: float = Field(default=30.0, alias="STOP_TIMEOUT_SECONDS")
    save_wait_seconds: float = Field(default=2.0, alias="SAVE_WAIT_SECONDS")
    startup_grace_seconds: float = Field(default=120.0, alias="STARTUP_GRACE_SECONDS")
    restart_delay_seconds: float = Field(default=2.0, alias="RESTART_DELAY_SECONDS")
    process_poll_seconds: float = Field(default=5.0, alias="PROCESS_POLL_SECONDS")

    cluster_port_offset: int = Field(default=100, ge=3, alias="CLUSTER_PORT_OFFSET")
    cluster_max_servers: int = Field(default=10, alias="CLUSTER_MAX_SERVERS")

    mod_policy_rules: List[ModPolicyRule] = Field(
        default_factory=lambda: [ModPolicyRule(pattern=r"club|bobs", mods=[1005639], exclude_shared=True)],
        alias="MOD_POLICY_RULES",
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @property
    def clusters_path(self) -> Path:
        return self.base_path / "clusters"

    @property
    def servers_path(self) -> Path:
        return self.base_path / "servers"

    @property
    def backups_path(self) -> Path:
        return self.base_path / "backups"

    @property
    def records_path(self) -> Path:
        return self.base_path / "records"

    @property
    def global_configs_path(self) -> Path:
        return self.base_path / "global-configs"

    @property
    def logs_path(self) -> Path:
        return self.base_path / "logs"
