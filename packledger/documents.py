"""Structured config documents and the tree form the merge engine works on.

Every supported format is decoded into a tree of :class:`Scalar`,
:class:`ListNode` and :class:`MapNode`, merged, and encoded back using the
destination's format.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Union

import toml
import yaml

from .errors import MergeParseError

# Deeply nested input overflows the recursive parsers and node conversion.
PARSE_ERRORS = (ValueError, TypeError, RecursionError, yaml.YAMLError)


@dataclass(slots=True)
class Scalar:
    value: Any

    kind = "scalar"


@dataclass(slots=True)
class ListNode:
    items: List[Any] = field(default_factory=list)

    kind = "list"


@dataclass(slots=True)
class MapNode:
    entries: Dict[Hashable, "Node"] = field(default_factory=dict)

    kind = "map"


Node = Union[Scalar, ListNode, MapNode]


def to_node(value: Any) -> Node:
    if isinstance(value, dict):
        return MapNode({key: to_node(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return ListNode(list(value))
    return Scalar(value)


def from_node(node: Node) -> Any:
    if isinstance(node, MapNode):
        return {key: from_node(item) for key, item in node.entries.items()}
    if isinstance(node, ListNode):
        return list(node.items)
    return node.value


@dataclass(frozen=True, slots=True)
class DocumentFormat:
    name: str
    suffixes: tuple[str, ...]
    loads: Callable[[str], Any]
    dumps: Callable[[Any], str]

    def parse(self, text: str, label: str = "<document>") -> Node:
        try:
            return to_node(self.loads(text))
        except PARSE_ERRORS as exc:
            raise MergeParseError(f"Cannot parse {label} as {self.name}: {exc}") from exc

    def render(self, node: Node) -> str:
        return self.dumps(from_node(node))


def _load_json(text: str) -> Any:
    return json.loads(text)


def _dump_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False) + "\n"


def _load_toml(text: str) -> Any:
    return toml.loads(text)


def _dump_toml(value: Any) -> str:
    if not isinstance(value, dict):
        raise MergeParseError("TOML documents must have a table at the top level")
    return toml.dumps(value)


def _load_yaml(text: str) -> Any:
    value = yaml.safe_load(text)
    # An empty YAML file is an empty mapping for merge purposes.
    return {} if value is None else value


def _dump_yaml(value: Any) -> str:
    return yaml.safe_dump(value, sort_keys=False, allow_unicode=True, default_flow_style=False)


_FORMATS: Dict[str, DocumentFormat] = {}


def register_format(document_format: DocumentFormat) -> None:
    _FORMATS[document_format.name] = document_format


def get_format(name: str) -> DocumentFormat:
    try:
        return _FORMATS[name]
    except KeyError as exc:
        raise KeyError(f"Unknown document format: {name}") from exc


def default_suffix_table() -> Dict[str, str]:
    """Map each registered suffix (lower case, with dot) to its format name."""

    table: Dict[str, str] = {}
    for document_format in _FORMATS.values():
        for suffix in document_format.suffixes:
            table[suffix.lower()] = document_format.name
    return table


def decode_document(data: bytes, document_format: DocumentFormat, label: str) -> Node:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MergeParseError(f"{label} is not UTF-8 text") from exc
    return document_format.parse(text, label)


def encode_document(node: Node, document_format: DocumentFormat) -> bytes:
    try:
        return document_format.render(node).encode("utf-8")
    except MergeParseError:
        raise
    except PARSE_ERRORS as exc:
        raise MergeParseError(f"Cannot write merged document as {document_format.name}: {exc}") from exc


register_format(DocumentFormat("json", (".json", ".mcmeta"), _load_json, _dump_json))
register_format(DocumentFormat("toml", (".toml",), _load_toml, _dump_toml))
register_format(DocumentFormat("yaml", (".yaml", ".yml"), _load_yaml, _dump_yaml))


__all__ = [
    "Scalar",
    "ListNode",
    "MapNode",
    "Node",
    "to_node",
    "from_node",
    "DocumentFormat",
    "register_format",
    "get_format",
    "default_suffix_table",
    "decode_document",
    "encode_document",
]
