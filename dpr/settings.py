from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DPR_DB_PATH", "dpr.db")
    poll_interval_s: int = _env_int("DPR_POLL_INTERVAL_S", 10)
    requeue_interval_s: int = _env_int("DPR_REQUEUE_INTERVAL_S", 2)
    docker_network: str = os.getenv("DPR_DOCKER_NETWORK", "kind")

    # Images
    node_image_repository: str = os.getenv("DPR_NODE_IMAGE_REPOSITORY", "kindest/node")
    lb_image_repository: str = os.getenv("DPR_LB_IMAGE_REPOSITORY", "kindest")
    lb_image_tag: str = os.getenv("DPR_LB_IMAGE_TAG", "v20230510-486859a6")

    # Machines
    worker_name_prefix: str = os.getenv("DPR_WORKER_NAME_PREFIX", "worker")
    # Remove anonymous volumes together with the machine container.
    remove_volumes: bool = _env_bool("DPR_REMOVE_VOLUMES", True)


settings = Settings()
