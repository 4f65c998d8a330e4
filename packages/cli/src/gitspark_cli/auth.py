"""Azure DevOps credential resolution with Azure CLI fallback.

Resolution order (stops at first success):
  1. ``--pat`` flag, ``AZURE_DEVOPS_PAT``/``AZURE_DEVOPS_TOKEN`` or the config
     file (handled by config resolution)
  2. ``az account get-access-token`` for the Azure DevOps resource, which
     yields a bearer token for the signed-in Azure CLI user
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import replace

from gitspark_core.config import AzureDevOpsConfig

logger = logging.getLogger(__name__)

# Application ID of the Azure DevOps service principal.
AZURE_DEVOPS_RESOURCE = "499b84ac-1321-427f-aa17-267ca6975798"


def resolve_azure_cli_token() -> str | None:
    """Return an access token from the Azure CLI session, or None.

    Never raises; a missing ``az`` binary, a signed-out session and a
    timeout all read as "no token".
    """
    try:
        result = subprocess.run(
            ["az", "account", "get-access-token", "--resource", AZURE_DEVOPS_RESOURCE, "--output", "json"],
            capture_output=True,
            text=True,
            timeout=15,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        logger.debug("az account get-access-token failed: %s", result.stderr.strip())
        return None
    try:
        token = json.loads(result.stdout).get("accessToken")
    except (ValueError, AttributeError):
        return None
    if token:
        logger.debug("Resolved Azure DevOps token via Azure CLI session.")
    return token or None


def with_fallback_credentials(config: AzureDevOpsConfig) -> AzureDevOpsConfig:
    """Attach an Azure CLI bearer token when no PAT was configured."""
    if config.personal_access_token or config.bearer_token:
        return config
    token = resolve_azure_cli_token()
    if token is None:
        return config
    return replace(config, bearer_token=token)
