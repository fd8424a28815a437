"""labrig configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """labrig settings loaded from environment variables."""

    # Per-deployment state, relative to the invocation directory
    state_dir: str = ".labrig"

    # Hypervisor backend
    backend_binary: str = "propolis-server"
    backend_host: str = "127.0.0.1"
    vm_destroy_command: str = "bhyvectl"

    # Control RPC timeout (seconds)
    rpc_timeout: float = 10.0

    # Storage substrate
    zfs_binary: str = "zfs"
    storage_root: str = "rpool/labrig"
    snapshot_tag: str = "base"

    # Serial console; Ctrl-Q by default
    console_quit_byte: int = 0x11

    # Network fabric device name prefixes (kept short, IFNAMSIZ is 16)
    bridge_prefix: str = "lrb"
    tap_prefix: str = "lrt"

    # Logging
    log_level: str = "WARNING"
    log_format: str = "text"  # text or json

    class Config:
        env_prefix = "LABRIG_"


settings = Settings()
