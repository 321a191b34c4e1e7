"""vpcctl command-line runtime helpers."""

from .config import CtlConfig, load_config  # noqa: F401

__all__ = [
    "CtlConfig",
    "load_config",
]
