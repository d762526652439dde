"""Configuration loading and validation for sanitizer runs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .constants import DEFAULT_REMOTE_URL_TEMPLATE, NAME_MATCH_MODES
from .policy import ConfigurationError, SubstitutionPolicy

__all__ = ["ConfigurationError", "RunConfig", "CONFIG_SCHEMA", "load_config", "parse_config"]

_COORDINATE_PATTERN = r"^(?!\.{1,2}/)[A-Za-z0-9_.-]+/(?!\.{1,2}$)[A-Za-z0-9_.-]+$"

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "required": ["repositories"],
    "properties": {
        "repositories": {
            "type": "array",
            "minItems": 1,
            "uniqueItems": True,
            "items": {"type": "string", "pattern": _COORDINATE_PATTERN},
        },
        "email_substitutions": {
            "type": "object",
            "propertyNames": {"minLength": 1},
            "additionalProperties": {"type": "string"},
        },
        "name_substitutions": {
            "type": "object",
            "propertyNames": {"minLength": 1},
            "additionalProperties": {"type": "string"},
        },
        "name_match": {"enum": list(NAME_MATCH_MODES)},
        "remote_url_template": {"type": "string", "pattern": r"\{(repository|org|name)\}"},
    },
}


@dataclass(frozen=True)
class RunConfig:
    source: Path
    repositories: tuple[str, ...]
    policy: SubstitutionPolicy
    remote_url_template: str = DEFAULT_REMOTE_URL_TEMPLATE

    def remote_url(self, repository: str) -> str:
        org, name = repository.split("/", 1)
        return self.remote_url_template.format(repository=repository, org=org, name=name)


def _strip_jsonc(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
        elif text.startswith("//", i):
            i = text.find("\n", i)
            if i < 0:
                break
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _unique_object(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in pairs:
        if key in data:
            raise ConfigurationError(f"duplicate key in configuration: {key!r}")
        data[key] = value
    return data


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects repeated mapping keys instead of overwriting."""


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode) -> dict:
    loader.flatten_mapping(node)
    pairs = [
        (loader.construct_object(key_node, deep=True), loader.construct_object(value_node, deep=True))
        for key_node, value_node in node.value
    ]
    return _unique_object(pairs)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


def _read_document(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"unable to open configuration file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.load(text, Loader=_UniqueKeyLoader)
        return json.loads(_strip_jsonc(text), object_pairs_hook=_unique_object)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"error reading configuration file {path}: {exc}") from exc


def parse_config(document: Any, source: Path) -> RunConfig:
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(document), key=lambda err: list(err.absolute_path))
    if errors:
        details = "\n".join(
            f"- {'/'.join(str(part) for part in err.absolute_path) or '<root>'}: {err.message}"
            for err in errors
        )
        raise ConfigurationError(f"configuration schema validation failed for {source}:\n{details}")

    policy = SubstitutionPolicy(
        email_rules=document.get("email_substitutions", {}),
        name_rules=document.get("name_substitutions", {}),
        name_match=document.get("name_match", "literal"),
    )
    template = document.get("remote_url_template", DEFAULT_REMOTE_URL_TEMPLATE)
    config = RunConfig(
        source=source,
        repositories=tuple(document["repositories"]),
        policy=policy,
        remote_url_template=template,
    )
    try:
        config.remote_url(config.repositories[0])
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigurationError(f"invalid remote_url_template {template!r}: {exc}") from exc
    return config


def load_config(path: Path) -> RunConfig:
    return parse_config(_read_document(path), path)
