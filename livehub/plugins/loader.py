"""Plugin discovery: ``plugin.yaml`` manifests plus an entry module per package."""

from __future__ import annotations

import importlib.util
import sys
from pathlib import Path
from types import ModuleType
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from livehub.exceptions import InvalidPluginError
from livehub.plugins.base import PluginDefinition, PluginManifest

logger = structlog.get_logger()

MANIFEST_FILENAME = "plugin.yaml"
_MODULE_PREFIX = "livehub_plugin_"
# Optional module-level factory returning the object that carries the hooks
_FACTORY_NAME = "create_plugin"


class PluginLoadFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path
    error: str


class DiscoveryReport(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    definitions: list[PluginDefinition]
    failures: list[PluginLoadFailure]


def load_manifest(plugin_dir: Path) -> PluginManifest:
    path = plugin_dir / MANIFEST_FILENAME
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InvalidPluginError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise InvalidPluginError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise InvalidPluginError(f"{path} must contain a mapping")
    try:
        return PluginManifest.model_validate(data)
    except ValidationError as e:
        raise InvalidPluginError(f"invalid manifest {path}: {e}") from e


def load_module(manifest: PluginManifest, plugin_dir: Path) -> ModuleType:
    root = plugin_dir.resolve()
    entry = (root / manifest.main).resolve()
    if not entry.is_relative_to(root):
        raise InvalidPluginError(f"entry module escapes plugin directory: {manifest.main}")
    if not entry.is_file():
        raise InvalidPluginError(f"entry module not found: {entry}")

    module_name = f"{_MODULE_PREFIX}{manifest.id.replace('-', '_').replace('.', '_')}"
    spec = importlib.util.spec_from_file_location(module_name, entry)
    if spec is None or spec.loader is None:
        raise InvalidPluginError(f"cannot create module spec for {entry}")
    module = importlib.util.module_from_spec(spec)
    # Registered before exec so dataclasses and pickling inside the plugin work
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise InvalidPluginError(f"failed to import {entry}: {e}") from e
    logger.debug("plugin_module_loaded", plugin_id=manifest.id, path=str(entry))
    return module


def resolve_target(module: ModuleType) -> Any:
    """Return the object exposing the hooks: a factory's product or the module."""
    factory = getattr(module, _FACTORY_NAME, None)
    if factory is None:
        return module
    if not callable(factory):
        raise InvalidPluginError(f"{_FACTORY_NAME} is not callable")
    try:
        return factory()
    except Exception as e:
        raise InvalidPluginError(f"{_FACTORY_NAME}() failed: {e}") from e


def load_plugin_dir(plugin_dir: Path) -> PluginDefinition:
    manifest = load_manifest(plugin_dir)
    module = load_module(manifest, plugin_dir)
    target = resolve_target(module)
    definition = PluginDefinition.from_object(manifest, target, source=plugin_dir)
    logger.info(
        "plugin_discovered",
        plugin_id=manifest.id,
        version=manifest.version,
        passive=definition.hooks.passive,
        capabilities=sorted(c.value for c in manifest.capabilities),
    )
    return definition


def discover(directories: list[Path]) -> DiscoveryReport:
    """Scan each directory for plugin packages; one bad package never stops the rest."""
    definitions: list[PluginDefinition] = []
    failures: list[PluginLoadFailure] = []
    for directory in directories:
        if not directory.is_dir():
            logger.warning("plugin_dir_missing", path=str(directory))
            continue
        for candidate in sorted(directory.iterdir()):
            if not (candidate / MANIFEST_FILENAME).is_file():
                continue
            try:
                definitions.append(load_plugin_dir(candidate))
            except InvalidPluginError as e:
                logger.error("plugin_invalid", path=str(candidate), error=str(e))
                failures.append(PluginLoadFailure(path=candidate, error=str(e)))
    return DiscoveryReport(definitions=definitions, failures=failures)
