"""Plan files: YAML documents with `settings`, `variables` and `items`.

    settings:
      package_manager: auto
    variables:
      DOTFILES: ${HOME}/dotfiles
    items:
      - kind: symlink
        src: ${DOTFILES}/nvim
        dst: ${HOME}/.config/nvim

Built-in profiles live in `devbox_provisioner/profiles/<name>.yaml`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .config import ProvisionConfig
from .errors import MalformedSpec
from .plan import Plan, load_plan

logger = logging.getLogger(__name__)


PROFILES_DIR = Path(__file__).resolve().parent / "profiles"


@dataclass(frozen=True)
class LoadedPlan:
    config: ProvisionConfig
    plan: Plan
    variables: Dict[str, str]
    source: str


def list_profiles() -> List[str]:
    return sorted(p.stem for p in PROFILES_DIR.glob("*.yaml"))


def profile_path(name: str) -> Path:
    p = PROFILES_DIR / f"{name}.yaml"
    if not p.is_file():
        raise FileNotFoundError(f"Unknown profile {name!r} (available: {', '.join(list_profiles())})")
    return p


def load_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise MalformedSpec(f"{path}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise MalformedSpec(f"{path}: plan file must be a mapping/dict")
    return data


def resolve_variables(
    declared: Mapping[str, Any],
    *,
    home: str,
    overrides: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Expand declared variables in order; overrides win over declared values."""

    if not isinstance(declared, Mapping):
        raise MalformedSpec("variables must be a mapping")
    over = dict(overrides or {})
    resolved: Dict[str, str] = {"HOME": home, **over}
    for key, value in declared.items():
        if not isinstance(key, str) or not isinstance(value, (str, int, float)):
            raise MalformedSpec(f"variable {key!r} must map a name to a string")
        if key in over:
            continue
        try:
            resolved[key] = Template(str(value)).substitute(resolved)
        except (KeyError, ValueError) as e:
            raise MalformedSpec(f"variable {key!r} cannot be expanded: {e}") from e
    return resolved


def _inline_content_files(items: List[Any], variables: Mapping[str, str], base_dir: Path) -> List[Any]:
    """Replace `content_file` on textblock items with the file's text."""

    out: List[Any] = []
    for index, raw in enumerate(items):
        if not isinstance(raw, Mapping) or "content_file" not in raw:
            out.append(raw)
            continue
        item = dict(raw)
        ref = item.pop("content_file")
        if "content" in item:
            raise MalformedSpec("use either 'content' or 'content_file', not both", index=index)
        if not isinstance(ref, str) or not ref.strip():
            raise MalformedSpec("field 'content_file' must be a path", index=index)
        try:
            expanded = Template(ref).substitute(variables)
        except (KeyError, ValueError) as e:
            raise MalformedSpec(f"field 'content_file' cannot be expanded: {e}", index=index) from e
        if expanded.startswith("~"):
            expanded = variables.get("HOME", "~") + expanded[1:]
        path = Path(expanded)
        if not path.is_absolute():
            path = base_dir / path
        try:
            item["content"] = path.read_text(encoding="utf-8")
        except OSError as e:
            raise MalformedSpec(f"cannot read content_file {str(path)!r}: {e}", index=index) from e
        out.append(item)
    return out


def load_plan_document(
    doc: Mapping[str, Any],
    *,
    home: str,
    overrides: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
    source: str = "<memory>",
) -> LoadedPlan:
    unknown = set(doc) - {"settings", "variables", "items", "description"}
    if unknown:
        raise MalformedSpec(f"{source}: unknown top-level key(s): {', '.join(sorted(map(str, unknown)))}")

    settings = doc.get("settings") or {}
    if not isinstance(settings, dict):
        raise MalformedSpec(f"{source}: settings must be a mapping")
    config = ProvisionConfig(raw=settings).validate()

    variables = resolve_variables(doc.get("variables") or {}, home=home, overrides=overrides)

    items = doc.get("items")
    if not isinstance(items, list):
        raise MalformedSpec(f"{source}: 'items' must be a list")
    items = _inline_content_files(items, variables, base_dir or Path.cwd())

    plan = load_plan(items, variables=variables)
    logger.info("Loaded %s: %d item(s)", source, len(plan))
    return LoadedPlan(config=config, plan=plan, variables=variables, source=source)


def load_plan_file(
    path: str | Path,
    *,
    home: str,
    overrides: Optional[Mapping[str, str]] = None,
) -> LoadedPlan:
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(str(p))
    return load_plan_document(
        load_yaml(p),
        home=home,
        overrides=overrides,
        base_dir=p.resolve().parent,
        source=str(p),
    )


def load_profile(
    name: str,
    *,
    home: str,
    overrides: Optional[Mapping[str, str]] = None,
) -> LoadedPlan:
    return load_plan_file(profile_path(name), home=home, overrides=overrides)
