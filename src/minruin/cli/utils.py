from pathlib import Path
from typing import Iterable

import click
import yaml
from loguru import logger

from minruin.core.config import PACKAGE_CONF_DIR
from minruin.core.exceptions import RuinSolverError

# ---------------------------------------------------------------------
# Config discovery utilities (Hydra-free)
# ---------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """
    Load YAML file safely.
    Returns empty dict if file is missing or empty.
    """
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text())
    return data if isinstance(data, dict) else {}


def find_default_groups(conf_dir: Path) -> list[str]:
    """
    Read conf/config.yaml and return config groups declared in defaults.

    Ignores Hydra internals and override entries.
    """
    data = _load_yaml(conf_dir / "config.yaml")

    groups: list[str] = []
    for entry in data.get("defaults", []):
        if isinstance(entry, dict):
            for key in entry.keys():
                if key.startswith("hydra/") or key.startswith("override "):
                    continue
                groups.append(key)

    return groups


def extract_leaf_items(data, prefix="") -> list[tuple[str, object]]:
    """
    Recursively extract (dotted path, value) pairs from nested dicts.

    Lists (e.g. cohort.persons) are reported as a single leaf.
    """
    results: list[tuple[str, object]] = []

    if isinstance(data, dict):
        for key, value in data.items():
            full_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                results.extend(extract_leaf_items(value, full_key))
            else:
                results.append((full_key, value))

    return results


def list_override_items(
    conf_dir: Path,
    groups: Iterable[str] | None = None,
) -> dict[str, list[tuple[str, object]]]:
    """
    Return mapping of group → list of (path, default_value).

    If groups is None, uses groups declared in config.yaml defaults.
    """
    if groups is None:
        groups = find_default_groups(conf_dir)

    overrides: dict[str, list[tuple[str, object]]] = {}
    for group in groups:
        items = extract_leaf_items(_load_yaml(conf_dir / group / "default.yaml"))
        if items:
            overrides[group] = items

    return overrides


def format_override_value(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, list):
        return yaml.safe_dump(value, default_flow_style=True).strip()
    return str(value)


def format_override_help(conf_dir: Path = PACKAGE_CONF_DIR, groups: Iterable[str] | None = None) -> str:
    """
    Format override paths for inclusion in CLI --help output.
    """
    overrides = list_override_items(conf_dir, groups)

    if not overrides:
        return ""

    # \b keeps click from rewrapping the list
    lines = ["\b", "Possible overrides (with defaults):"]
    for group, items in overrides.items():
        for path, value in items:
            lines.append(f"  {group}.{path}={format_override_value(value)}")

    return "\n".join(lines)


# ---------------------------------------------------------------------
# Error reporting
# ---------------------------------------------------------------------


def fail(e: RuinSolverError) -> click.ClickException:
    """Log a solver error and turn it into a click error (exit code 1)."""
    logger.error("{}: {}", type(e).__name__, e)
    return click.ClickException(str(e))
