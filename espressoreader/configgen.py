"""Generates Markdown documentation for the node's environment variables."""

from __future__ import annotations

import argparse
import tomllib
from dataclasses import dataclass
from pathlib import Path

_DOCS_HEADER = """<!--
File generated by internal/config/generate.
DO NOT EDIT.
-->

<!-- markdownlint-disable line_length -->
# Node Configuration

The node is configurable through environment variables.
(There is no other way to configure it.)

This file documents the configuration options.

<!-- markdownlint-disable MD012 -->"""


@dataclass
class Env:
    """One environment variable described in the configuration TOML."""

    name: str = ""
    go_type: str = ""
    description: str = ""
    default: str | None = None

    def validate(self) -> None:
        if not self.go_type:
            raise ValueError("missing go-type for " + self.name)
        if not self.description:
            raise ValueError("missing description for " + self.name)


def read_toml(path: str | Path) -> str:
    return Path(path).read_text(encoding="utf-8")


def decode_toml(data: str) -> dict[str, dict[str, Env]]:
    """Parse topics of variables; each table entry becomes an Env."""
    parsed = tomllib.loads(data)
    config: dict[str, dict[str, Env]] = {}
    for topic, entries in parsed.items():
        if not isinstance(entries, dict):
            raise ValueError(f"topic {topic!r} is not a table")
        envs: dict[str, Env] = {}
        for name, entry in entries.items():
            if not isinstance(entry, dict):
                raise ValueError(f"variable {name!r} is not a table")
            default = entry.get("default")
            if default is not None and not isinstance(default, str):
                raise ValueError(f"default of {name!r} must be a string")
            envs[name] = Env(
                name=name,
                go_type=str(entry.get("go-type", "")),
                description=str(entry.get("description", "")),
                default=default,
            )
        config[topic] = envs
    return config


def sort_config(config: dict[str, dict[str, Env]]) -> list[Env]:
    """Flatten the config, sorted by topic and then by variable name."""
    envs: list[Env] = []
    for topic in sorted(config):
        for name in sorted(config[topic]):
            env = config[topic][name]
            env.name = name
            envs.append(env)
    return envs


def render_docs(envs: list[Env]) -> str:
    parts = [_DOCS_HEADER]
    for env in envs:
        parts.append(f"\n\n## `{env.name}`\n\n{env.description}\n\n* **Type:** `{env.go_type}`")
        if env.default is not None:
            parts.append(f'\n* **Default:** `"{env.default}"`')
    parts.append("\n")
    return "".join(parts)


def generate_docs_file(path: str | Path, envs: list[Env]) -> None:
    Path(path).write_text(render_docs(envs), encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate configuration documentation.")
    parser.add_argument("--config", default="Config.toml")
    parser.add_argument("--docs", default="../../../docs/config.md")
    args = parser.parse_args(argv)
    envs = sort_config(decode_toml(read_toml(args.config)))
    for env in envs:
        env.validate()
    generate_docs_file(args.docs, envs)
    return 0