from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional


QUERY_SUFFIX = ".graphql"


@dataclass(frozen=True)
class RequestTemplate:
    name: str
    body: str
    variables: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Request template name cannot be empty")
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def payload(self) -> dict[str, Any]:
        return {"query": self.body, "variables": dict(self.variables)}


class QueryCatalog:
    """Read-only, ordered set of request templates keyed by name."""

    def __init__(self, templates: Iterable[RequestTemplate]) -> None:
        by_name: dict[str, RequestTemplate] = {}
        for template in templates:
            if template.name in by_name:
                raise ValueError(f"Duplicate request template name: {template.name}")
            by_name[template.name] = template
        self._templates: Mapping[str, RequestTemplate] = MappingProxyType(by_name)

    def get(self, name: str) -> Optional[RequestTemplate]:
        return self._templates.get(name)

    def names(self) -> list[str]:
        return list(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __iter__(self) -> Iterator[RequestTemplate]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)


def _load_variables(variables_file: Optional[Path]) -> dict[str, Any]:
    if variables_file is None:
        return {}
    parsed = json.loads(variables_file.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(
            f"Variables file {variables_file} must contain a JSON object keyed by query name"
        )
    return parsed


def load_catalog(
    queries_dir: Path,
    variables_file: Optional[Path] = None,
    names: Optional[list[str]] = None,
) -> QueryCatalog:
    """Build a catalog from ``<name>.graphql`` files and a JSON variables map.

    When ``names`` is given only those files are loaded, in that order;
    otherwise every ``*.graphql`` file in ``queries_dir`` is loaded sorted by name.
    """
    variables_by_name = _load_variables(variables_file)
    if names is None:
        query_files = sorted(queries_dir.glob(f"*{QUERY_SUFFIX}"))
    else:
        query_files = [queries_dir / f"{name}{QUERY_SUFFIX}" for name in names]

    templates: list[RequestTemplate] = []
    for query_file in query_files:
        name = query_file.name[: -len(QUERY_SUFFIX)]
        variables = variables_by_name.get(name) or {}
        if not isinstance(variables, dict):
            raise ValueError(f"Variables for query '{name}' must be a JSON object")
        templates.append(
            RequestTemplate(
                name=name,
                body=query_file.read_text(encoding="utf-8"),
                variables=variables,
            )
        )
    return QueryCatalog(templates)
