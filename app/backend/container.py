from dataclasses import dataclass
from pathlib import Path
import os


@dataclass
class AppConfig:
    config_file: Path
    options_file: Path
    storage_dir: Path
    cache_dir: Path
    scheduler_lock_file: Path


@dataclass
class AppContainer:
    config: AppConfig


def build_container() -> AppContainer:
    config_file = Path(os.getenv("SAHKOAPP_CONFIG", "config.yaml"))
    config_dir = Path("/config")
    storage_env = os.getenv("SAHKOAPP_STORAGE")
    if storage_env:
        storage_dir = Path(storage_env)
    else:
        storage_dir = config_dir / "sahkoapp" if config_dir.exists() else Path("/data")

    cache_dir = storage_dir / "data-cache"
    options_file = storage_dir / "options.json"
    scheduler_lock_file = storage_dir / "refresh-scheduler.lock"

    return AppContainer(
        config=AppConfig(
            config_file=config_file,
            options_file=options_file,
            storage_dir=storage_dir,
            cache_dir=cache_dir,
            scheduler_lock_file=scheduler_lock_file,
        )
    )
