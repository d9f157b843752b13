"""Shared modules for e2e-setup.

This module provides functionality used by every backend:
- Logging setup
- Work directory paths
- Child process cleanup
"""

from .logging import bind_run, configure_logging, get_logger
from .paths import KUBECONFIG_FILE, ensure_work_dir, get_kubeconfig_path, get_work_dir
from .processes import reap

__all__ = [
    # Paths
    "KUBECONFIG_FILE",
    "get_work_dir",
    "ensure_work_dir",
    "get_kubeconfig_path",
    # Logging
    "configure_logging",
    "bind_run",
    "get_logger",
    # Processes
    "reap",
]
