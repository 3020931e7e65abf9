"""istruct agent configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent settings loaded from ISTRUCT_* environment variables."""

    # HTTP listener
    host: str = "::"
    port: int = 8989

    # Hypervisor connection
    libvirt_uri: str = "qemu:///system"
    emulator_path: str = "/usr/bin/qemu-system-x86_64"

    # Persistent state
    registry_path: str = "/var/lib/istruct/registry.db"
    block_dir: str = "/var/lib/istruct/block"
    qemu_img_path: str = "qemu-img"

    # Defaults for the compute devices created with every machine
    default_vcpus: int = 1
    default_memory_bytes: int = 128 * 1024 * 1024  # 128 MiB

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    class Config:
        env_prefix = "ISTRUCT_"


settings = Settings()
