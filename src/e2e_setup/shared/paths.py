"""Path management for e2e-setup.

Generated files (kubeconfig, rendered manifests) live under one work
directory so teardown knows where to find them.
"""

import os
import tempfile
from pathlib import Path

WORK_DIR_ENV = "E2E_SETUP_DIR"

# File name of the kubeconfig written by the cluster backend
KUBECONFIG_FILE = "e2e-k8s.config"


def get_work_dir() -> Path:
    """Get the work directory.

    Returns:
        $E2E_SETUP_DIR if set, else <tmp>/e2e-setup
    """
    configured = os.environ.get(WORK_DIR_ENV)
    if configured:
        return Path(configured)
    return Path(tempfile.gettempdir()) / "e2e-setup"


def ensure_work_dir() -> Path:
    """Create the work directory if missing.

    Returns:
        Path to the work directory
    """
    work_dir = get_work_dir()
    work_dir.mkdir(parents=True, exist_ok=True)
    return work_dir


def get_kubeconfig_path() -> Path:
    """Get the path of the kubeconfig generated for the ephemeral cluster."""
    return get_work_dir() / KUBECONFIG_FILE
