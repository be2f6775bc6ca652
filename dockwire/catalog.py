"""Versioned operation catalog built from bundled engine API documents.

Each API version is described by a swagger 2.0 document. Operations are
grouped into categories by the first segment of their path, so
``/containers/{id}/json`` lands in ``containers`` and ``/_ping`` in ``_ping``.

Catalogs are loaded once per version and shared through a ``CatalogCache``.
Concurrent first loads of the same version are single-flight: one caller
parses the document while the others wait on the per-version lock, and the
finished catalog is published in a single assignment.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from typing import Any, Final, Protocol

from .errors import (
    UnknownCategoryError,
    UnknownOperationError,
    UnsupportedVersionError,
)
from .response import ResultKind

_LOGGER = logging.getLogger(__name__)

_SPEC_PACKAGE: Final = "dockwire.specs"
_VERSION_RE: Final = re.compile(r"^v(\d+)\.(\d+)$")
_HTTP_METHODS: Final = ("get", "put", "post", "delete", "head", "patch", "options")


class ParamLocation(Enum):
    """Where a parameter value travels in the HTTP request."""

    PATH = "path"
    QUERY = "query"
    HEADER = "header"
    BODY = "body"
    STREAM = "stream"


@dataclass(frozen=True, slots=True)
class ParamSpec:
    """Declared parameter of an operation."""

    name: str
    location: ParamLocation
    required: bool = False
    type: str | None = None
    description: str = ""

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "in": self.location.value,
            "required": self.required,
            "type": self.type,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class OperationSpec:
    """One named remote procedure of the engine API."""

    name: str
    category: str
    method: str
    path: str
    params: tuple[ParamSpec, ...] = ()
    doc: str = ""
    produces: tuple[str, ...] = ("application/json",)
    consumes: tuple[str, ...] = ("application/json",)
    default_result_kind: ResultKind = ResultKind.VALUE

    def param(self, name: str) -> ParamSpec | None:
        for param in self.params:
            if param.name == name:
                return param
        return None

    def params_in(self, location: ParamLocation) -> tuple[ParamSpec, ...]:
        return tuple(p for p in self.params if p.location is location)

    def describe(self) -> dict[str, Any]:
        return {"doc": self.doc, "params": [p.describe() for p in self.params]}


def version_key(version: str) -> tuple[int, int]:
    """Sortable key for an API version string such as ``v1.40``."""
    match = _VERSION_RE.match(version)
    if match is None:
        raise UnsupportedVersionError(version)
    return int(match.group(1)), int(match.group(2))


def _category_of(path: str) -> str:
    return path.lstrip("/").split("/", 1)[0]


def _is_binary(schema: Mapping[str, Any] | None) -> bool:
    return bool(schema) and schema.get("type") == "string" and schema.get("format") == "binary"


def _parse_param(raw: Mapping[str, Any]) -> ParamSpec:
    location = raw["in"]
    schema = raw.get("schema")
    if location == "body":
        kind = ParamLocation.STREAM if _is_binary(schema) else ParamLocation.BODY
        type_ = (schema or {}).get("type")
    else:
        kind = ParamLocation(location)
        type_ = raw.get("type")
    return ParamSpec(
        name=raw["name"],
        location=kind,
        # path parameters are always required in swagger 2.0
        required=bool(raw.get("required", False)) or kind is ParamLocation.PATH,
        type=type_,
        description=raw.get("description", ""),
    )


def _default_result_kind(
    produces: tuple[str, ...], responses: Mapping[str, Any]
) -> ResultKind:
    """Pick the result shape documented by the first 2xx response."""
    success = [code for code in responses if str(code).startswith("2")]
    if not success:
        return ResultKind.STRING
    schema = responses[min(success)].get("schema") or {}
    produces_json = any("json" in media for media in produces)
    if produces_json and (schema.get("type") in ("object", "array") or "$ref" in schema):
        return ResultKind.VALUE
    return ResultKind.STRING


def _doc_of(raw: Mapping[str, Any]) -> str:
    parts = [raw.get("summary", ""), raw.get("description", "")]
    return "\n\n".join(part for part in parts if part)


def parse_document(
    document: Mapping[str, Any],
) -> dict[str, dict[str, OperationSpec]]:
    """Index a swagger document as ``{category: {operation name: spec}}``."""
    default_produces = tuple(document.get("produces", ("application/json",)))
    default_consumes = tuple(document.get("consumes", ("application/json",)))
    index: dict[str, dict[str, OperationSpec]] = {}

    for path, item in document.get("paths", {}).items():
        shared = item.get("parameters", [])
        for method in _HTTP_METHODS:
            raw = item.get(method)
            if raw is None:
                continue
            produces = tuple(raw.get("produces", default_produces))
            spec = OperationSpec(
                name=raw["operationId"],
                category=_category_of(path),
                method=method.upper(),
                path=path,
                params=tuple(_parse_param(p) for p in [*shared, *raw.get("parameters", [])]),
                doc=_doc_of(raw),
                produces=produces,
                consumes=tuple(raw.get("consumes", default_consumes)),
                default_result_kind=_default_result_kind(
                    produces, raw.get("responses", {})
                ),
            )
            index.setdefault(spec.category, {})[spec.name] = spec
    return index


@dataclass(frozen=True)
class Catalog:
    """All operations of one API version, indexed by category."""

    version: str
    base_path: str
    index: Mapping[str, Mapping[str, OperationSpec]] = field(repr=False)

    @classmethod
    def from_document(cls, version: str, document: Mapping[str, Any]) -> Catalog:
        return cls(
            version=version,
            base_path=document.get("basePath", f"/{version}").rstrip("/"),
            index=parse_document(document),
        )

    def categories(self) -> set[str]:
        return set(self.index)

    def operations(self, category: str) -> set[str]:
        return set(self._category(category))

    def operation(self, category: str, name: str) -> OperationSpec:
        ops = self._category(category)
        try:
            return ops[name]
        except KeyError:
            raise UnknownOperationError(name, category, self.version) from None

    def describe(self, category: str, name: str) -> dict[str, Any]:
        return self.operation(category, name).describe()

    def _category(self, category: str) -> Mapping[str, OperationSpec]:
        try:
            return self.index[category]
        except KeyError:
            raise UnknownCategoryError(category, self.version) from None


class CatalogSource(Protocol):
    """Supplier of raw API documents keyed by version."""

    def versions(self) -> list[str]: ...

    def load(self, version: str) -> Mapping[str, Any]: ...


class BundledSource:
    """Reads the swagger documents shipped inside ``dockwire.specs``."""

    def versions(self) -> list[str]:
        root = resources.files(_SPEC_PACKAGE)
        names = (entry.name for entry in root.iterdir())
        return sorted(
            (name[: -len(".json")] for name in names if name.endswith(".json")),
            key=version_key,
        )

    def load(self, version: str) -> Mapping[str, Any]:
        resource = resources.files(_SPEC_PACKAGE) / f"{version}.json"
        if not resource.is_file():
            raise UnsupportedVersionError(version)
        with resource.open("r", encoding="utf-8") as handle:
            return json.load(handle)


class CatalogCache:
    """Process-wide memo of parsed catalogs with single-flight loading."""

    def __init__(self, source: CatalogSource | None = None) -> None:
        self._source = source or BundledSource()
        self._catalogs: dict[str, Catalog] = {}
        self._lock = threading.Lock()
        self._version_locks: dict[str, threading.Lock] = {}

    def versions(self) -> list[str]:
        return sorted(self._source.versions(), key=version_key)

    def latest_version(self) -> str:
        versions = self.versions()
        if not versions:
            raise UnsupportedVersionError("latest")
        return versions[-1]

    def resolve_version(self, version: str | None) -> str:
        return self.latest_version() if version is None else version

    def get(self, version: str | None = None) -> Catalog:
        """Return the catalog for ``version``, loading it on first use."""
        version = self.resolve_version(version)
        catalog = self._catalogs.get(version)
        if catalog is not None:
            return catalog
        if version not in self._source.versions():
            raise UnsupportedVersionError(version)

        with self._lock:
            version_lock = self._version_locks.setdefault(version, threading.Lock())
        with version_lock:
            catalog = self._catalogs.get(version)
            if catalog is None:
                _LOGGER.debug("Loading API catalog %s", version)
                catalog = Catalog.from_document(version, self._source.load(version))
                self._catalogs[version] = catalog
        return catalog

    def clear(self) -> None:
        with self._lock:
            self._catalogs.clear()
            self._version_locks.clear()


DEFAULT_CACHE: Final = CatalogCache()


def available_versions(cache: CatalogCache | None = None) -> list[str]:
    """List bundled API versions, oldest first."""
    return (cache or DEFAULT_CACHE).versions()


def latest_version(cache: CatalogCache | None = None) -> str:
    return (cache or DEFAULT_CACHE).latest_version()


def categories(version: str | None = None, *, cache: CatalogCache | None = None) -> set[str]:
    """List operation categories of an API version (latest by default)."""
    return (cache or DEFAULT_CACHE).get(version).categories()


def list_operations(
    category: str, version: str | None = None, *, cache: CatalogCache | None = None
) -> set[str]:
    return (cache or DEFAULT_CACHE).get(version).operations(category)


def describe(
    category: str,
    version: str | None,
    name: str,
    *,
    cache: CatalogCache | None = None,
) -> dict[str, Any]:
    """Return ``{"doc": ..., "params": [...]}`` for an operation."""
    return (cache or DEFAULT_CACHE).get(version).describe(category, name)
