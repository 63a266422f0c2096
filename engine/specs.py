"""Spec document helpers: loading, type detection, operation listing and
synthetic response generation.

OpenAPI paths, GraphQL root fields and AsyncAPI channel operations all come
out as ``SpecOperation``s so the mock server can serve any of them.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml
from graphql import (
    FieldNode,
    GraphQLEnumType,
    GraphQLError,
    GraphQLInterfaceType,
    GraphQLList,
    GraphQLNonNull,
    GraphQLObjectType,
    GraphQLSchema,
    GraphQLUnionType,
    OperationDefinitionNode,
    build_client_schema,
    build_schema,
    introspection_from_schema,
    parse,
)

from engine.errors import ValidationError

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")

_MAX_DEPTH = 8
_PATH_PARAM = re.compile(r"^\{[^}]+\}$")


@dataclass
class SpecOperation:
    id: str
    method: str
    path: str
    status: int = 200
    schema: Optional[dict] = None
    example: Any = None
    has_example: bool = False
    kind: str = "http"
    channel: Optional[str] = None
    segments: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.segments:
            self.segments = [s for s in self.path.split("/") if s]

    @property
    def literal_segments(self) -> int:
        return sum(1 for s in self.segments if not _PATH_PARAM.match(s))

    def matches(self, method: str, path: str) -> bool:
        if method.upper() != self.method:
            return False
        parts = [s for s in path.split("/") if s]
        if len(parts) != len(self.segments):
            return False
        return all(
            _PATH_PARAM.match(expected) or expected == actual
            for expected, actual in zip(self.segments, parts)
        )


_GRAPHQL_SDL = re.compile(r"\btype\s+(Query|Mutation)\b|\bschema\s*\{")
_PROTO = re.compile(r"\bsyntax\s*=\s*\"proto[23]\"|\bservice\s+\w+\s*\{")
_WSDL = re.compile(r"wsdl:definitions|<definitions\b")
_STRUCTURED_ROOT = re.compile(r"^\s*(openapi|swagger|asyncapi)\s*:", re.MULTILINE)


def _is_source_text(text: str) -> bool:
    """SDL, proto and WSDL documents are kept verbatim rather than parsed."""
    if text.startswith("<"):
        return True
    if _STRUCTURED_ROOT.search(text):
        return False
    return any(p.search(text) for p in (_GRAPHQL_SDL, _PROTO, _WSDL))


def load_spec_document(raw: Any) -> dict:
    """Parse a spec given as a mapping, JSON text or YAML text.

    Schema languages that are not JSON/YAML come back as ``{"content": text}``.
    """
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Spec must be a non-empty JSON/YAML document")

    text = raw.strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON spec: {exc}") from exc
    elif _is_source_text(text):
        return {"content": text}
    else:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValidationError(f"Invalid YAML spec: {exc}") from exc

    if isinstance(parsed, str):
        return {"content": text}
    if not isinstance(parsed, dict):
        raise ValidationError("Spec document must be a mapping")
    return parsed


def detect_spec_type(spec: Any) -> Optional[str]:
    if not isinstance(spec, dict):
        return None
    if "openapi" in spec or "swagger" in spec:
        return "openapi"
    if "asyncapi" in spec:
        return "asyncapi"
    if "__schema" in spec or isinstance(spec.get("data"), dict) and "__schema" in spec["data"]:
        return "graphql"

    content = spec.get("content")
    if isinstance(content, str):
        if _GRAPHQL_SDL.search(content):
            return "graphql"
        if _PROTO.search(content):
            return "grpc"
        if _WSDL.search(content):
            return "soap"
    return None


def _success_response(responses: dict) -> tuple[int, Optional[dict]]:
    for code in sorted(responses, key=str):
        code_str = str(code)
        if code_str.startswith("2") and code_str.isdigit():
            return int(code_str), responses[code]
    return 200, responses.get("default")


def _media_schema(response: Optional[dict]) -> tuple[Optional[dict], Any, bool]:
    """Return (schema, example, has_example) for a response object."""
    if not isinstance(response, dict):
        return None, None, False
    content = response.get("content")
    if isinstance(content, dict) and content:
        media = content.get("application/json") or next(iter(content.values()))
        if isinstance(media, dict):
            if "example" in media:
                return media.get("schema"), media["example"], True
            examples = media.get("examples")
            if isinstance(examples, dict) and examples:
                first = next(iter(examples.values()))
                if isinstance(first, dict) and "value" in first:
                    return media.get("schema"), first["value"], True
            return media.get("schema"), None, False
    # Swagger 2.0 puts the schema on the response itself
    if "schema" in response:
        return response["schema"], None, False
    return None, None, False


def list_operations(spec: dict) -> list[SpecOperation]:
    """All mockable operations of a spec document, by its detected type."""
    spec_type = detect_spec_type(spec)
    if spec_type == "graphql":
        return _graphql_operations(spec)
    if spec_type == "asyncapi":
        return _asyncapi_operations(spec)
    return _openapi_operations(spec)


def _openapi_operations(spec: dict) -> list[SpecOperation]:
    """All HTTP operations of an OpenAPI document.

    The operation id is ``operationId`` when declared, otherwise
    ``<METHOD>.<path>``.
    """
    paths = spec.get("paths") if isinstance(spec, dict) else None
    if not isinstance(paths, dict):
        return []

    operations = []
    for path, item in paths.items():
        if not isinstance(item, dict):
            continue
        for method in HTTP_METHODS:
            op = item.get(method)
            if not isinstance(op, dict):
                continue
            status, response = _success_response(op.get("responses") or {})
            response = resolve_ref(spec, response) if isinstance(response, dict) else response
            schema, example, has_example = _media_schema(response)
            operations.append(
                SpecOperation(
                    id=op.get("operationId") or f"{method.upper()}.{path}",
                    method=method.upper(),
                    path=path,
                    status=status,
                    schema=schema,
                    example=example,
                    has_example=has_example,
                )
            )
    return operations


def resolve_ref(spec: dict, node: dict) -> dict:
    ref = node.get("$ref")
    if not isinstance(ref, str) or not ref.startswith("#/"):
        return node
    target: Any = spec
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(target, dict) or part not in target:
            logger.debug("Unresolvable $ref %s", ref)
            return {}
        target = target[part]
    return target if isinstance(target, dict) else {}


GRAPHQL_PATH = "/graphql"
INTROSPECTION_OPERATION = "__introspection"

_ROOT_TYPES = {"query": "Query", "mutation": "Mutation", "subscription": "Subscription"}
_GRAPHQL_SCALARS = {"String": "string", "ID": "id", "Int": 0, "Float": 0.0, "Boolean": True}
_GRAPHQL_DEPTH = 3


def graphql_schema(spec: dict) -> Optional[GraphQLSchema]:
    """Schema from SDL text (``{"content": ...}``) or an introspection result."""
    try:
        if isinstance(spec.get("content"), str):
            return build_schema(spec["content"])
        if "__schema" in spec:
            return build_client_schema(spec)
        if isinstance(spec.get("data"), dict) and "__schema" in spec["data"]:
            return build_client_schema(spec["data"])
    except (GraphQLError, TypeError, KeyError) as exc:
        logger.warning("Unusable GraphQL schema: %s", exc)
    return None


def _graphql_sample(gql_type: Any, depth: int = 0) -> Any:
    if isinstance(gql_type, GraphQLNonNull):
        return _graphql_sample(gql_type.of_type, depth)
    if isinstance(gql_type, GraphQLList):
        return [_graphql_sample(gql_type.of_type, depth)]
    if isinstance(gql_type, GraphQLEnumType):
        return next(iter(gql_type.values), None)
    if isinstance(gql_type, GraphQLUnionType):
        return _graphql_sample(gql_type.types[0], depth) if gql_type.types else None
    if isinstance(gql_type, (GraphQLObjectType, GraphQLInterfaceType)):
        if depth >= _GRAPHQL_DEPTH:
            return None
        return {
            name: _graphql_sample(field_def.type, depth + 1)
            for name, field_def in gql_type.fields.items()
        }
    return _GRAPHQL_SCALARS.get(getattr(gql_type, "name", None), "string")


def _graphql_operations(spec: dict) -> list[SpecOperation]:
    """One ``POST /graphql`` operation per Query, Mutation and Subscription field.

    Ids are ``<Root>.<field>``, e.g. ``Query.user``.
    """
    schema = graphql_schema(spec)
    if schema is None:
        return []

    operations = []
    roots = (
        ("Query", schema.query_type),
        ("Mutation", schema.mutation_type),
        ("Subscription", schema.subscription_type),
    )
    for root, root_type in roots:
        if root_type is None:
            continue
        for name, field_def in root_type.fields.items():
            operations.append(
                SpecOperation(
                    id=f"{root}.{name}",
                    method="POST",
                    path=GRAPHQL_PATH,
                    example={"data": {name: _graphql_sample(field_def.type)}},
                    has_example=True,
                    kind="graphql",
                )
            )
    return operations


def graphql_introspection(spec: dict) -> Optional[SpecOperation]:
    """The operation answering ``{ __schema { ... } }`` queries."""
    schema = graphql_schema(spec)
    if schema is None:
        return None
    return SpecOperation(
        id=INTROSPECTION_OPERATION,
        method="POST",
        path=GRAPHQL_PATH,
        example={"data": introspection_from_schema(schema)},
        has_example=True,
        kind="graphql",
    )


def graphql_operation_id(body: Any) -> Optional[str]:
    """The operation id a GraphQL request body addresses.

    ``operationName`` picks among several operations in the query document;
    the first root field of that operation names the handler. A body with an
    ``operationName`` but no query addresses that name directly.
    """
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            return None
    if not isinstance(body, dict):
        return None

    name = body.get("operationName")
    query = body.get("query")
    if not isinstance(query, str):
        return name if isinstance(name, str) and name else None
    try:
        document = parse(query)
    except GraphQLError:
        return None

    definitions = [d for d in document.definitions if isinstance(d, OperationDefinitionNode)]
    if name:
        definitions = [d for d in definitions if d.name and d.name.value == name] or definitions
    for definition in definitions:
        for selection in definition.selection_set.selections:
            if not isinstance(selection, FieldNode) or selection.name.value == "__typename":
                continue
            if selection.name.value == "__schema":
                return INTROSPECTION_OPERATION
            return f"{_ROOT_TYPES[definition.operation.value]}.{selection.name.value}"
    return None


def _asyncapi_message(spec: dict, message: Any) -> dict:
    if not isinstance(message, dict):
        return {}
    message = resolve_ref(spec, message)
    if message.get("oneOf"):
        return _asyncapi_message(spec, message["oneOf"][0])
    return message


def _asyncapi_operations(spec: dict) -> list[SpecOperation]:
    """Publish and subscribe operations of every AsyncAPI 2.x channel.

    The operation id is ``operationId`` when declared, otherwise
    ``<direction>.<channel>`` with non-alphanumerics replaced by ``_``. The
    mock serves each one at ``POST /<channel>`` with a sample message.
    """
    channels = spec.get("channels")
    if not isinstance(channels, dict):
        return []

    operations = []
    for channel, item in channels.items():
        if not isinstance(item, dict):
            continue
        for direction in ("publish", "subscribe"):
            op = item.get(direction)
            if not isinstance(op, dict):
                continue
            message = _asyncapi_message(spec, op.get("message"))
            examples = [
                e for e in message.get("examples") or [] if isinstance(e, dict) and "payload" in e
            ]
            default_id = f"{direction}.{re.sub(r'[^a-zA-Z0-9]', '_', channel)}"
            operations.append(
                SpecOperation(
                    id=op.get("operationId") or default_id,
                    method="POST",
                    path="/" + channel.strip("/"),
                    schema=message.get("payload"),
                    example=examples[0]["payload"] if examples else None,
                    has_example=bool(examples),
                    kind="event",
                    channel=channel,
                )
            )
    return operations


_FORMAT_SAMPLES = {
    "date-time": "2024-01-01T00:00:00Z",
    "date": "2024-01-01",
    "time": "00:00:00",
    "email": "user@example.com",
    "uuid": "00000000-0000-4000-8000-000000000000",
    "uri": "https://example.com",
    "url": "https://example.com",
    "hostname": "example.com",
    "ipv4": "127.0.0.1",
    "ipv6": "::1",
    "byte": "ZXhhbXBsZQ==",
}


def sample_from_schema(spec: dict, schema: Any, depth: int = 0) -> Any:
    """Produce a value conforming to ``schema``."""
    if not isinstance(schema, dict) or depth > _MAX_DEPTH:
        return None
    if "$ref" in schema:
        return sample_from_schema(spec, resolve_ref(spec, schema), depth + 1)
    if "example" in schema:
        return schema["example"]
    if "default" in schema:
        return schema["default"]
    if schema.get("enum"):
        return schema["enum"][0]

    if "allOf" in schema:
        merged: dict = {}
        for part in schema["allOf"]:
            value = sample_from_schema(spec, part, depth + 1)
            if isinstance(value, dict):
                merged.update(value)
        return merged
    for key in ("oneOf", "anyOf"):
        if schema.get(key):
            return sample_from_schema(spec, schema[key][0], depth + 1)

    kind = schema.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), None)
    if kind is None and "properties" in schema:
        kind = "object"

    if kind == "object":
        props = schema.get("properties") or {}
        return {name: sample_from_schema(spec, prop, depth + 1) for name, prop in props.items()}
    if kind == "array":
        return [sample_from_schema(spec, schema.get("items"), depth + 1)]
    if kind == "string":
        return _FORMAT_SAMPLES.get(schema.get("format"), "string")
    if kind == "integer":
        return int(schema.get("minimum", 0))
    if kind == "number":
        return float(schema.get("minimum", 0))
    if kind == "boolean":
        return True
    return None


def synthesize_response(spec: dict, operation: SpecOperation) -> tuple[int, Any]:
    """Status and body for an operation with no canned responses."""
    if operation.has_example:
        return operation.status, operation.example
    return operation.status, sample_from_schema(spec, operation.schema)
