"""Azure DevOps configuration resolution.

Configuration is assembled from an ordered list of ``ConfigLayer`` objects.
Every layer field is ``None`` when the source did not provide it, and
``merge_layers`` only overwrites a field when the later layer's value
``is not None``, so ``False``/``0``/``""`` set explicitly still win.

Precedence, lowest first:
  1. Built-in defaults
  2. Auto-detection from the ``origin`` git remote
  3. Config file (``--config``, ``.gitspark.yml`` or ``.azure-devops.json``)
  4. Environment variables
  5. CLI overrides
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import yaml

from gitspark_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".gitspark.yml"
LEGACY_CONFIG_FILENAME = ".azure-devops.json"
CONFIG_SECTION = "azure_devops"

MAX_API_PAGE_SIZE = 1000

_ORG_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]$")
_AZURE_HOSTS = ("dev.azure.com", "visualstudio.com")

_REMOTE_PATTERNS = [
    re.compile(r"https://(?:[^@/]+@)?dev\.azure\.com/([^/]+)/([^/]+)/_git/([^/]+)"),
    re.compile(r"https://(?:[^@/]+@)?([^./]+)\.visualstudio\.com/([^/]+)/_git/([^/]+)"),
    re.compile(r"git@ssh\.dev\.azure\.com:v3/([^/]+)/([^/]+)/([^/]+)"),
]

_ENV_VARS = {
    "organization": ("AZURE_DEVOPS_ORG", "AZURE_DEVOPS_ORGANIZATION"),
    "project": ("AZURE_DEVOPS_PROJECT",),
    "repository": ("AZURE_DEVOPS_REPO", "AZURE_DEVOPS_REPOSITORY"),
    "personal_access_token": ("AZURE_DEVOPS_PAT", "AZURE_DEVOPS_TOKEN"),
}

_STRING_FIELDS = (
    "organization",
    "project",
    "repository",
    "personal_access_token",
    "bearer_token",
    "base_url",
    "api_version",
    "cache_directory",
)
_INT_FIELDS = ("timeout_ms", "max_retries", "requests_per_minute", "page_size", "max_page_size", "cache_ttl_ms")
_NUMBER_FIELDS = ("cache_max_size_mb",)
_BOOL_FIELDS = (
    "rate_limit_enabled",
    "enable_time_partitioning",
    "cache_enabled",
    "cache_incremental",
    "cache_background_cleanup",
)
_CACHE_FIELDS = (
    "cache_enabled",
    "cache_directory",
    "cache_ttl_ms",
    "cache_incremental",
    "cache_max_size_mb",
    "cache_background_cleanup",
)


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int = 180
    enabled: bool = True


@dataclass(frozen=True)
class PaginationConfig:
    page_size: int = 100
    max_page_size: int = MAX_API_PAGE_SIZE
    enable_time_partitioning: bool = True


@dataclass(frozen=True)
class ApiConfig:
    base_url: str = "https://dev.azure.com"
    version: str = "7.0"
    timeout_ms: int = 30_000
    max_retries: int = 3
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    directory: str = ".git-spark/cache/azure-devops"
    ttl_ms: int = 60 * 60 * 1000
    incremental: bool = True
    max_size_mb: float = 100
    background_cleanup: bool = False


@dataclass(frozen=True)
class AzureDevOpsConfig:
    """Fully resolved configuration consumed by the client, cache and collector."""

    organization: str
    project: str
    repository: str | None = None
    personal_access_token: str | None = None
    bearer_token: str | None = None
    api: ApiConfig = field(default_factory=ApiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @property
    def repository_or_default(self) -> str:
        return self.repository or "default"

    @property
    def cache_key(self) -> str:
        """``org-project-repo`` identifier used for the processed collection."""
        return f"{self.organization}-{self.project}-{self.repository_or_default}"


@dataclass
class ConfigLayer:
    """One partial configuration source. ``None`` means "not provided"."""

    source: str = "unknown"
    organization: Optional[str] = None
    project: Optional[str] = None
    repository: Optional[str] = None
    personal_access_token: Optional[str] = None
    bearer_token: Optional[str] = None
    base_url: Optional[str] = None
    api_version: Optional[str] = None
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None
    requests_per_minute: Optional[int] = None
    rate_limit_enabled: Optional[bool] = None
    page_size: Optional[int] = None
    max_page_size: Optional[int] = None
    enable_time_partitioning: Optional[bool] = None
    cache_enabled: Optional[bool] = None
    cache_directory: Optional[str] = None
    cache_ttl_ms: Optional[int] = None
    cache_incremental: Optional[bool] = None
    cache_max_size_mb: Optional[float] = None
    cache_background_cleanup: Optional[bool] = None

    def provided(self) -> list[str]:
        """Names of the fields this layer sets."""
        return [f.name for f in fields(self) if f.name != "source" and getattr(self, f.name) is not None]


def default_layer() -> ConfigLayer:
    api = ApiConfig()
    cache = CacheConfig()
    return ConfigLayer(
        source="defaults",
        base_url=api.base_url,
        api_version=api.version,
        timeout_ms=api.timeout_ms,
        max_retries=api.max_retries,
        requests_per_minute=api.rate_limit.requests_per_minute,
        rate_limit_enabled=api.rate_limit.enabled,
        page_size=api.pagination.page_size,
        max_page_size=api.pagination.max_page_size,
        enable_time_partitioning=api.pagination.enable_time_partitioning,
        cache_enabled=cache.enabled,
        cache_directory=cache.directory,
        cache_ttl_ms=cache.ttl_ms,
        cache_incremental=cache.incremental,
        cache_max_size_mb=cache.max_size_mb,
        cache_background_cleanup=cache.background_cleanup,
    )


def merge_layers(layers: list[ConfigLayer]) -> ConfigLayer:
    """Fold layers left to right; a later field wins only when it is not None."""
    merged = ConfigLayer(source="merged")
    for layer in layers:
        for name in layer.provided():
            setattr(merged, name, getattr(layer, name))
    return merged


def layer_from_mapping(data: dict, source: str) -> ConfigLayer:
    """Translate the nested ``azure_devops`` mapping of a config file into a layer."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: the {CONFIG_SECTION} section must be a mapping")
    api = _section(data, "api", source)
    rate_limit = _section(api, "rate_limit", source)
    pagination = _section(api, "pagination", source)
    cache = _section(data, "cache", source)
    return ConfigLayer(
        source=source,
        organization=data.get("organization"),
        project=data.get("project"),
        repository=data.get("repository"),
        personal_access_token=data.get("personal_access_token"),
        base_url=api.get("base_url"),
        api_version=_optional_str(api.get("version")),
        timeout_ms=api.get("timeout_ms"),
        max_retries=api.get("max_retries"),
        requests_per_minute=rate_limit.get("requests_per_minute"),
        rate_limit_enabled=rate_limit.get("enabled"),
        page_size=pagination.get("page_size"),
        max_page_size=pagination.get("max_page_size"),
        enable_time_partitioning=pagination.get("enable_time_partitioning"),
        cache_enabled=cache.get("enabled"),
        cache_directory=cache.get("directory"),
        cache_ttl_ms=cache.get("ttl_ms"),
        cache_incremental=cache.get("incremental"),
        cache_max_size_mb=cache.get("max_size_mb"),
        cache_background_cleanup=cache.get("background_cleanup"),
    )


def _section(data: dict, name: str, source: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{source}: '{name}' must be a mapping, got {value!r}")
    return value


def _optional_str(value) -> str | None:
    # YAML reads `version: 7.0` as a float.
    return None if value is None else str(value)


def load_file_layer(repo_path: str | Path, config_path: str | None = None) -> ConfigLayer | None:
    """Load the first config file found, or None.

    Lookup order: explicit ``config_path`` (relative to ``repo_path``), the
    ``azure_devops`` section of ``.gitspark.yml``, then ``.azure-devops.json``.
    A file that exists but cannot be parsed raises ConfigurationError.
    """
    root = Path(repo_path)
    if config_path:
        path = root / config_path
        if path.exists():
            data = _read_mapping(path)
            return layer_from_mapping(data.get(CONFIG_SECTION, data), source=str(path))
        logger.warning("Specified Azure DevOps config file not found: %s", path)

    main_path = root / CONFIG_FILENAME
    if main_path.exists():
        data = _read_mapping(main_path)
        if data.get(CONFIG_SECTION):
            return layer_from_mapping(data[CONFIG_SECTION], source=str(main_path))

    legacy_path = root / LEGACY_CONFIG_FILENAME
    if legacy_path.exists():
        return layer_from_mapping(_read_mapping(legacy_path), source=str(legacy_path))

    return None


def _read_mapping(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def load_env_layer(environ: dict | None = None) -> ConfigLayer | None:
    env = os.environ if environ is None else environ
    values = {}
    for name, keys in _ENV_VARS.items():
        for key in keys:
            if env.get(key):
                values[name] = env[key]
                break
    if not values:
        return None
    return ConfigLayer(source="environment", **values)


def parse_remote_url(remote_url: str) -> ConfigLayer | None:
    """Extract organization/project/repository from an Azure Repos remote URL."""
    for pattern in _REMOTE_PATTERNS:
        match = pattern.search(remote_url)
        if not match:
            continue
        organization, project, repository = match.groups()
        repository = repository.removesuffix(".git")
        if ".visualstudio.com" in remote_url:
            base_url = f"https://{organization}.visualstudio.com"
        else:
            base_url = "https://dev.azure.com"
        return ConfigLayer(
            source="git-remote",
            organization=organization,
            project=project,
            repository=repository,
            base_url=base_url,
        )
    return None


def detect_remote_layer(repo_path: str | Path) -> ConfigLayer | None:
    """Auto-detect configuration from the ``origin`` remote. Never raises."""
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=str(repo_path),
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, NotADirectoryError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    remote_url = result.stdout.strip()
    layer = parse_remote_url(remote_url)
    if layer:
        logger.info(
            "Auto-detected Azure DevOps config from git remote: org=%s project=%s repo=%s (%s)",
            layer.organization,
            layer.project,
            layer.repository,
            redact_url(remote_url),
        )
    return layer


def redact_url(url: str) -> str:
    return re.sub(r"//[^@/]*@", "//***@", url)


def build_config(layer: ConfigLayer) -> AzureDevOpsConfig:
    """Turn a merged layer into a validated AzureDevOpsConfig.

    Raises ConfigurationError listing every validation failure.
    """
    errors, warnings = validate_layer(layer)
    for warning in warnings:
        logger.warning("Azure DevOps config: %s", warning)
    if errors:
        raise ConfigurationError("Azure DevOps configuration validation failed: " + ", ".join(errors), errors)

    defaults = default_layer()

    def pick(name: str):
        value = getattr(layer, name)
        return getattr(defaults, name) if value is None else value

    return AzureDevOpsConfig(
        organization=layer.organization,
        project=layer.project,
        repository=layer.repository,
        personal_access_token=layer.personal_access_token,
        bearer_token=layer.bearer_token,
        api=ApiConfig(
            base_url=pick("base_url").rstrip("/"),
            version=pick("api_version"),
            timeout_ms=int(pick("timeout_ms")),
            max_retries=int(pick("max_retries")),
            rate_limit=RateLimitConfig(
                requests_per_minute=int(pick("requests_per_minute")),
                enabled=bool(pick("rate_limit_enabled")),
            ),
            pagination=PaginationConfig(
                page_size=int(pick("page_size")),
                max_page_size=int(pick("max_page_size")),
                enable_time_partitioning=bool(pick("enable_time_partitioning")),
            ),
        ),
        cache=CacheConfig(
            enabled=bool(pick("cache_enabled")),
            directory=pick("cache_directory"),
            ttl_ms=int(pick("cache_ttl_ms")),
            incremental=bool(pick("cache_incremental")),
            max_size_mb=float(pick("cache_max_size_mb")),
            background_cleanup=bool(pick("cache_background_cleanup")),
        ),
    )


def is_organization_url(organization: str) -> bool:
    return organization.startswith(("http://", "https://"))


def is_azure_host(hostname: str) -> bool:
    return any(hostname == host or hostname.endswith("." + host) for host in _AZURE_HOSTS)


def validate_layer(layer: ConfigLayer) -> tuple[list[str], list[str]]:
    """Return ``(errors, warnings)`` for a merged layer."""
    errors, invalid = _type_errors(layer)
    warnings: list[str] = []

    organization = layer.organization
    if "organization" in invalid:
        pass  # reported by the type check
    elif not organization:
        errors.append("Azure DevOps organization is required")
    elif is_organization_url(organization):
        if not is_azure_host(urlparse(organization).hostname or ""):
            errors.append(f"Invalid Azure DevOps URL: {organization}")
    elif not _ORG_NAME_RE.match(organization):
        errors.append("Azure DevOps organization name contains invalid characters")

    if "project" not in invalid and not layer.project:
        errors.append("Azure DevOps project is required")

    if not layer.personal_access_token and not layer.bearer_token:
        warnings.append("no personal access token provided; Azure CLI credentials will be used if available")

    def valid(name: str) -> bool:
        return name not in invalid and getattr(layer, name) is not None

    if valid("page_size") and layer.page_size > MAX_API_PAGE_SIZE:
        errors.append(f"page size cannot exceed {MAX_API_PAGE_SIZE} (Azure DevOps API limit)")
    if valid("page_size") and layer.page_size < 1:
        errors.append("page size must be at least 1")
    if valid("max_page_size") and not 1 <= layer.max_page_size <= MAX_API_PAGE_SIZE:
        errors.append(f"max page size must be between 1 and {MAX_API_PAGE_SIZE}")
    if valid("max_retries") and layer.max_retries < 1:
        errors.append("max_retries must be at least 1")
    if valid("requests_per_minute") and layer.requests_per_minute < 1:
        errors.append("requests_per_minute must be at least 1")
    if valid("timeout_ms") and layer.timeout_ms <= 0:
        errors.append("timeout_ms must be positive")
    elif valid("timeout_ms") and layer.timeout_ms < 1000:
        warnings.append("API timeout is very low (< 1 second)")

    cache_errors, cache_warnings = _validate_cache_fields(layer, invalid)
    return errors + cache_errors, warnings + cache_warnings


def _type_errors(layer: ConfigLayer, names: tuple[str, ...] | None = None) -> tuple[list[str], set[str]]:
    """Check each provided field against its expected type.

    Returns the error messages and the names of the fields that failed.
    """
    errors: list[str] = []
    invalid: set[str] = set()
    for name in names or layer.provided():
        value = getattr(layer, name)
        if value is None:
            continue
        if name in _STRING_FIELDS:
            ok, expected = isinstance(value, str), "a string"
        elif name in _INT_FIELDS:
            ok, expected = isinstance(value, int) and not isinstance(value, bool), "an integer"
        elif name in _NUMBER_FIELDS:
            ok, expected = isinstance(value, (int, float)) and not isinstance(value, bool), "a number"
        elif name in _BOOL_FIELDS:
            ok, expected = isinstance(value, bool), "true or false"
        else:
            continue
        if not ok:
            errors.append(f"{name} must be {expected} (got {value!r})")
            invalid.add(name)
    return errors, invalid


def _validate_cache_fields(layer: ConfigLayer, invalid: set[str]) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []
    if "cache_ttl_ms" not in invalid and layer.cache_ttl_ms is not None:
        if layer.cache_ttl_ms <= 0:
            errors.append("cache ttl_ms must be positive")
        elif layer.cache_ttl_ms < 60_000:
            warnings.append("cache TTL is very short (< 1 minute)")
    if "cache_max_size_mb" not in invalid and layer.cache_max_size_mb is not None:
        if layer.cache_max_size_mb <= 0:
            errors.append("cache max_size_mb must be positive")
        elif layer.cache_max_size_mb < 1:
            warnings.append("cache size is very small (< 1 MB)")
    return errors, warnings


def resolve_config(
    repo_path: str | Path,
    cli_layer: ConfigLayer | None = None,
    config_path: str | None = None,
    environ: dict | None = None,
    detect_remote: bool = True,
) -> AzureDevOpsConfig:
    """Resolve the complete configuration for ``repo_path``.

    Raises ConfigurationError when organization/project are missing or any
    field is malformed.
    """
    layers = [default_layer()]
    if detect_remote:
        remote = detect_remote_layer(repo_path)
        if remote:
            layers.append(remote)
    for layer in (load_file_layer(repo_path, config_path), load_env_layer(environ), cli_layer):
        if layer is not None:
            layers.append(layer)

    logger.debug("Resolving Azure DevOps config from layers: %s", [layer.source for layer in layers])
    config = build_config(merge_layers(layers))

    logger.info(
        "Azure DevOps configuration resolved: org=%s project=%s repo=%s token=%s",
        config.organization,
        config.project,
        config.repository,
        "yes" if (config.personal_access_token or config.bearer_token) else "no",
    )
    return config


def resolve_cache_config(repo_path: str | Path, config_path: str | None = None) -> CacheConfig:
    """Cache settings alone, without requiring organization or project."""
    layers = [default_layer()]
    file_layer = load_file_layer(repo_path, config_path)
    if file_layer is not None:
        layers.append(file_layer)
    merged = merge_layers(layers)
    errors, invalid = _type_errors(merged, _CACHE_FIELDS)
    cache_errors, warnings = _validate_cache_fields(merged, invalid)
    errors += cache_errors
    for warning in warnings:
        logger.warning("Azure DevOps config: %s", warning)
    if errors:
        raise ConfigurationError("Cache configuration validation failed: " + ", ".join(errors), errors)
    return CacheConfig(
        enabled=bool(merged.cache_enabled),
        directory=merged.cache_directory,
        ttl_ms=int(merged.cache_ttl_ms),
        incremental=bool(merged.cache_incremental),
        max_size_mb=float(merged.cache_max_size_mb),
        background_cleanup=bool(merged.cache_background_cleanup),
    )
