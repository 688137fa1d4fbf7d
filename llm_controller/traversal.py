"""Read-only inspection of stored tool outputs.

The model never sees a persisted payload directly. It gets a descriptor and
then asks targeted questions through these operations, each of which takes a
request model (or a plain dict) and returns a response model:

- ``list_outputs``: browse the index with filters, sorting and paging
- ``stats``: size, shape and type breakdown, optional inferred schema
- ``extract``: pull values out by path expression
- ``count``: array lengths, key counts, match counts
- ``sample``: first/last/systematic/random/stratified samples of an array
- ``read``: the whole record

Every failure is a ``TraversalError`` whose ``code`` is ``not_found``,
``bad_path``, ``type_mismatch`` or ``bad_request``.
"""

from __future__ import annotations

import logging
import math
import random
from typing import Any, Literal, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from llm_controller.errors import OutputNotFoundError, PathTypeError, TraversalError
from llm_controller.json_path import compile_path
from llm_controller.output_store import (
    OutputMetadata,
    OutputStore,
    StoredOutput,
    encode_payload,
    json_type_name,
)

logger = logging.getLogger(__name__)

MAX_STATS_ENTRIES = 200
_TYPE_ORDER = ("object", "array", "string", "number", "boolean", "null")

R = TypeVar("R", bound=BaseModel)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ListRequest(_Request):
    conversation_id: str | None = None
    tool_name: str | None = None
    success: bool | None = None
    after: int | None = None
    before: int | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    sort_by: Literal["created_at", "size", "tool_name"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    include_preview: bool = True
    preview_length: int = Field(default=100, ge=0, le=500)


class OutputSummary(BaseModel):
    type: str
    keys: int | None = None
    items: int | None = None


class ListEntry(BaseModel):
    id: str
    tool_name: str
    conversation_id: str | None
    message_id: str | None
    created_at: int
    success: bool
    size_bytes: int
    summary: OutputSummary
    preview: str | None = None


class ListResponse(BaseModel):
    outputs: list[ListEntry]
    total: int
    has_more: bool


class StatsRequest(_Request):
    id: str
    include_schema: bool = False
    max_depth: int = Field(default=5, ge=1, le=10)
    sample_arrays: bool = True
    paths: list[str] | None = None


class SizeInfo(BaseModel):
    bytes: int
    characters: int
    formatted: str


class StructureInfo(BaseModel):
    root_type: str
    max_depth: int
    total_keys: int
    total_values: int


class ArrayEntry(BaseModel):
    path: str
    length: int
    item_type: str


class ObjectEntry(BaseModel):
    path: str
    keys: int


class StatsResponse(BaseModel):
    id: str
    tool_name: str
    created_at: int
    size: SizeInfo
    structure: StructureInfo
    types: dict[str, int]
    arrays: list[ArrayEntry]
    objects: list[ObjectEntry]
    inferred_schema: dict[str, Any] | None = Field(default=None, serialization_alias="schema")
    truncated: bool = False


class ExtractRequest(_Request):
    id: str
    paths: list[str] = Field(min_length=1)
    flatten: bool = False
    include_paths: bool = False
    default_value: Any = None


class ExtractResponse(BaseModel):
    extracted: Any
    missing_paths: list[str] = Field(default_factory=list)


class CountSpec(_Request):
    """One named count.

    ``filter`` is a filter-expression body such as ``@.status == 'open'``.
    When set, the count is the number of children of the matched nodes that
    pass it, whatever the mode.
    """

    name: str = Field(min_length=1)
    path: str
    mode: Literal["array_length", "object_keys", "matches", "nested_total"] = "array_length"
    filter: str | None = None


class CountRequest(_Request):
    id: str
    counts: list[CountSpec] = Field(min_length=1)


class CountResponse(BaseModel):
    counts: dict[str, int]
    total: int
    missing: list[str] = Field(default_factory=list)


class SampleRequest(_Request):
    id: str
    path: str = "$"
    size: int = Field(ge=1, le=1000)
    strategy: Literal["first", "last", "random", "systematic", "stratified"] = "random"
    seed: int | None = None
    stride: int | None = Field(default=None, ge=1)
    group_by: str | None = None


class SampleResponse(BaseModel):
    sample: list[Any]
    indices: list[int]
    total_items: int
    sample_size: int
    strategy: str
    seed: int | None = None
    strata: dict[str, int] | None = None


class ReadRequest(_Request):
    id: str
    conversation_id: str | None = None


class ReadResponse(BaseModel):
    id: str
    tool_name: str
    conversation_id: str | None
    message_id: str | None
    created_at: int
    success: bool
    size_bytes: int
    parameters: dict[str, Any]
    output: Any


# ---------------------------------------------------------------------------
# Stats helpers
# ---------------------------------------------------------------------------


def format_bytes(size: int) -> str:
    kb = 1024
    mb = 1024 * kb
    gb = 1024 * mb
    if size >= gb:
        return f"{size / gb:.1f} GB"
    if size >= mb:
        return f"{size / mb:.1f} MB"
    if size >= kb:
        return f"{size / kb:.1f} KB"
    return f"{size} B"


def sample_indices(length: int) -> list[int]:
    """Representative positions of an array: first, middle, last."""
    if length == 0:
        return []
    indices = {0, length - 1}
    if length > 2:
        indices.add(length // 2)
    return sorted(indices)


def determine_array_item_type(items: list[Any]) -> str:
    if not items:
        return "unknown"
    first = json_type_name(items[0])
    if all(json_type_name(item) == first for item in items[:10]):
        return first
    return "mixed"


def infer_schema(value: Any, depth: int, max_depth: int, sample_arrays: bool = True) -> dict[str, Any]:
    if depth >= max_depth:
        return {}
    if isinstance(value, dict):
        return {
            "type": "object",
            "properties": {
                key: infer_schema(child, depth + 1, max_depth, sample_arrays)
                for key, child in value.items()
            },
        }
    if isinstance(value, list):
        items = infer_schema(value[0], depth + 1, max_depth, sample_arrays) if sample_arrays and value else {}
        return {"type": "array", "items": items}
    return {"type": json_type_name(value)}


class _StatsWalker:
    def __init__(self, max_depth: int, sample_arrays: bool) -> None:
        self.max_depth = max_depth
        self.sample_arrays = sample_arrays
        self.deepest = 0
        self.total_keys = 0
        self.total_values = 0
        self.types = {name: 0 for name in _TYPE_ORDER}
        self.arrays: list[ArrayEntry] = []
        self.objects: list[ObjectEntry] = []
        self.truncated = False

    def walk(self, value: Any, path: str, depth: int = 0) -> None:
        self.deepest = max(self.deepest, depth)
        self.total_values += 1
        kind = json_type_name(value)
        self.types[kind] += 1

        if isinstance(value, dict):
            self.total_keys += len(value)
            self._add(self.objects, ObjectEntry(path=path, keys=len(value)))
            if depth < self.max_depth:
                for key, child in value.items():
                    self.walk(child, f"{path}.{key}", depth + 1)
        elif isinstance(value, list):
            item_type = determine_array_item_type(value) if self.sample_arrays else "unknown"
            self._add(self.arrays, ArrayEntry(path=path, length=len(value), item_type=item_type))
            if depth < self.max_depth:
                for idx in sample_indices(len(value)):
                    self.walk(value[idx], f"{path}[{idx}]", depth + 1)

    def _add(self, entries: list[Any], entry: Any) -> None:
        if len(entries) >= MAX_STATS_ENTRIES:
            self.truncated = True
            return
        entries.append(entry)


# ---------------------------------------------------------------------------
# Count helpers
# ---------------------------------------------------------------------------


def count_nested_items(value: Any) -> int:
    """Every element and member below ``value``, at any depth."""
    if isinstance(value, list):
        children = value
    elif isinstance(value, dict):
        children = list(value.values())
    else:
        return 0
    return len(children) + sum(count_nested_items(child) for child in children)


def _count_one(spec: CountSpec, matches: list[Any]) -> int:
    if spec.filter:
        check = compile_path(f"$[?({spec.filter})]")
        passing = 0
        for node in matches:
            if node is None:
                continue
            if not isinstance(node, (list, dict)):
                raise PathTypeError(
                    f"Count {spec.name!r}: filter needs an array or object at {spec.path!r}, "
                    f"got {json_type_name(node)}"
                )
            passing += len(check.find(node))
        return passing

    if spec.mode == "matches":
        return len(matches)

    total = 0
    for node in matches:
        if node is None:
            continue
        if spec.mode == "array_length":
            if not isinstance(node, list):
                raise PathTypeError(
                    f"Count {spec.name!r}: array_length needs an array at {spec.path!r}, "
                    f"got {json_type_name(node)}"
                )
            total += len(node)
        elif spec.mode == "object_keys":
            if not isinstance(node, dict):
                raise PathTypeError(
                    f"Count {spec.name!r}: object_keys needs an object at {spec.path!r}, "
                    f"got {json_type_name(node)}"
                )
            total += len(node)
        else:
            total += count_nested_items(node)
    return total


# ---------------------------------------------------------------------------
# Sampling helpers
# ---------------------------------------------------------------------------


def _resolve_seed(seed: int | None) -> int:
    if seed is not None:
        return seed
    return random.SystemRandom().randrange(2**32)


def reservoir_indices(length: int, size: int, rng: random.Random) -> list[int]:
    """Algorithm R over ``range(length)``; returns sorted positions."""
    reservoir = list(range(min(size, length)))
    for i in range(size, length):
        j = rng.randint(0, i)
        if j < size:
            reservoir[j] = i
    return sorted(reservoir)


def allocate_largest_remainder(group_sizes: dict[str, int], size: int) -> dict[str, int]:
    """Split ``size`` across groups in proportion to their sizes."""
    total = sum(group_sizes.values())
    if total == 0:
        return {key: 0 for key in group_sizes}
    quotas = {key: size * count / total for key, count in group_sizes.items()}
    allocation = {key: math.floor(q) for key, q in quotas.items()}
    remaining = size - sum(allocation.values())
    # Stable sort keeps first-seen order among equal remainders.
    by_remainder = sorted(group_sizes, key=lambda key: quotas[key] - allocation[key], reverse=True)
    for key in by_remainder:
        if remaining <= 0:
            break
        if allocation[key] < group_sizes[key]:
            allocation[key] += 1
            remaining -= 1
    return allocation


def _group_key(value: Any) -> str:
    if isinstance(value, str):
        return value
    return encode_payload(value)


# ---------------------------------------------------------------------------
# Suite
# ---------------------------------------------------------------------------


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "request"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def _coerce(model: type[R], request: R | Mapping[str, Any], operation: str) -> R:
    if isinstance(request, model):
        return request
    try:
        return model.model_validate(request)
    except ValidationError as exc:
        raise TraversalError(
            f"Invalid {operation} request: {_describe_validation_error(exc)}",
            code="bad_request",
        ) from exc


class TraversalSuite:
    """Inspection operations over one ``OutputStore``."""

    def __init__(self, store: OutputStore) -> None:
        self.store = store

    def _load(self, output_id: str) -> StoredOutput:
        try:
            return self.store.read(output_id)
        except OutputNotFoundError as exc:
            raise TraversalError(str(exc), code="not_found") from exc

    # -- list ---------------------------------------------------------------

    def list_outputs(self, request: ListRequest | Mapping[str, Any] | None = None) -> ListResponse:
        req = _coerce(ListRequest, request or {}, "list")
        page, total = self.store.query(
            conversation_id=req.conversation_id,
            tool_name=req.tool_name,
            success=req.success,
            after=req.after,
            before=req.before,
            sort_by=req.sort_by,
            sort_order=req.sort_order,
            limit=req.limit,
            offset=req.offset,
        )
        outputs = [self._list_entry(meta, req) for meta in page]
        return ListResponse(outputs=outputs, total=total, has_more=req.offset + req.limit < total)

    @staticmethod
    def _list_entry(meta: OutputMetadata, req: ListRequest) -> ListEntry:
        summary = OutputSummary(
            type=meta.root_type,
            keys=meta.item_count if meta.root_type == "object" else None,
            items=meta.item_count if meta.root_type == "array" else None,
        )
        return ListEntry(
            id=meta.id,
            tool_name=meta.tool_name,
            conversation_id=meta.conversation_id,
            message_id=meta.message_id,
            created_at=meta.created_at,
            success=meta.success,
            size_bytes=meta.size_bytes,
            summary=summary,
            preview=meta.preview[: req.preview_length] if req.include_preview else None,
        )

    # -- stats --------------------------------------------------------------

    def stats(self, request: StatsRequest | Mapping[str, Any]) -> StatsResponse:
        req = _coerce(StatsRequest, request, "stats")
        record = self._load(req.id)
        payload = record.payload

        if req.paths:
            targets: list[tuple[str, Any]] = []
            for path in req.paths:
                for node in compile_path(path).find(payload):
                    targets.append((path, node))
        else:
            targets = [("$", payload)]

        walker = _StatsWalker(req.max_depth, req.sample_arrays)
        for path, node in targets:
            walker.walk(node, path)

        text = encode_payload(payload)
        return StatsResponse(
            id=record.id,
            tool_name=record.tool_name,
            created_at=record.created_at,
            size=SizeInfo(
                bytes=record.size_bytes,
                characters=len(text),
                formatted=format_bytes(record.size_bytes),
            ),
            structure=StructureInfo(
                root_type=json_type_name(payload),
                max_depth=walker.deepest,
                total_keys=walker.total_keys,
                total_values=walker.total_values,
            ),
            types=walker.types,
            arrays=walker.arrays,
            objects=walker.objects,
            inferred_schema=(
                infer_schema(payload, 0, req.max_depth, req.sample_arrays) if req.include_schema else None
            ),
            truncated=walker.truncated,
        )

    # -- extract ------------------------------------------------------------

    def extract(self, request: ExtractRequest | Mapping[str, Any]) -> ExtractResponse:
        req = _coerce(ExtractRequest, request, "extract")
        compiled = [(path, compile_path(path)) for path in req.paths]
        record = self._load(req.id)
        default_supplied = "default_value" in req.model_fields_set
        missing: list[str] = []

        if req.flatten:
            flat: list[Any] = []
            for path, jp in compiled:
                found = jp.find(record.payload)
                if not found:
                    missing.append(path)
                    if default_supplied:
                        flat.append(req.default_value)
                flat.extend(found)
            return ExtractResponse(extracted=flat, missing_paths=missing)

        if req.include_paths:
            pairs: list[dict[str, Any]] = []
            for path, jp in compiled:
                found = jp.find(record.payload)
                if not found:
                    missing.append(path)
                    pairs.append({"path": path, "value": req.default_value})
                else:
                    pairs.append({"path": path, "value": found})
            return ExtractResponse(extracted=pairs, missing_paths=missing)

        keyed: dict[str, Any] = {}
        for path, jp in compiled:
            found = jp.find(record.payload)
            if not found:
                missing.append(path)
                keyed[path] = req.default_value
            else:
                keyed[path] = found
        return ExtractResponse(extracted=keyed, missing_paths=missing)

    # -- count --------------------------------------------------------------

    def count(self, request: CountRequest | Mapping[str, Any]) -> CountResponse:
        req = _coerce(CountRequest, request, "count")
        compiled = [(spec, compile_path(spec.path)) for spec in req.counts]
        record = self._load(req.id)

        counts: dict[str, int] = {}
        missing: list[str] = []
        for spec, jp in compiled:
            matches = jp.find(record.payload)
            if not matches:
                missing.append(spec.name)
            counts[spec.name] = _count_one(spec, matches)
        return CountResponse(counts=counts, total=sum(counts.values()), missing=missing)

    # -- sample -------------------------------------------------------------

    def sample(self, request: SampleRequest | Mapping[str, Any]) -> SampleResponse:
        req = _coerce(SampleRequest, request, "sample")
        jp = compile_path(req.path)
        group_path = None
        if req.strategy == "stratified":
            if not req.group_by:
                raise TraversalError("Stratified sampling requires 'group_by'", code="bad_request")
            group_path = compile_path(req.group_by)
        record = self._load(req.id)

        matches = jp.find(record.payload)
        if not matches:
            raise TraversalError(f"Path {req.path!r} matched nothing", code="bad_request")
        items = next((m for m in matches if isinstance(m, list)), None)
        if items is None:
            raise PathTypeError(
                f"Path {req.path!r} did not match an array (got {json_type_name(matches[0])})"
            )

        total = len(items)
        size = req.size
        seed: int | None = None
        strata: dict[str, int] | None = None

        if size >= total:
            indices = list(range(total))
        elif req.strategy == "first":
            indices = list(range(size))
        elif req.strategy == "last":
            indices = list(range(total - size, total))
        elif req.strategy == "systematic":
            stride = req.stride or max(1, total // size)
            indices = list(range(0, total, stride))[:size]
        elif req.strategy == "random":
            seed = _resolve_seed(req.seed)
            indices = reservoir_indices(total, size, random.Random(seed))
        else:
            seed = _resolve_seed(req.seed)
            rng = random.Random(seed)
            groups: dict[str, list[int]] = {}
            for idx, item in enumerate(items):
                found = group_path.find(item) if group_path is not None else []
                groups.setdefault(_group_key(found[0] if found else None), []).append(idx)
            strata = allocate_largest_remainder({key: len(v) for key, v in groups.items()}, size)
            picked: list[int] = []
            for key, members in groups.items():
                picked.extend(rng.sample(members, strata[key]))
            indices = sorted(picked)

        if seed is None and req.strategy in ("random", "stratified") and req.seed is not None:
            seed = req.seed

        return SampleResponse(
            sample=[items[i] for i in indices],
            indices=indices,
            total_items=total,
            sample_size=len(indices),
            strategy=req.strategy,
            seed=seed,
            strata=strata,
        )

    # -- read ---------------------------------------------------------------

    def read(self, request: ReadRequest | Mapping[str, Any]) -> ReadResponse:
        req = _coerce(ReadRequest, request, "read")
        record = self._load(req.id)
        if req.conversation_id and record.conversation_id != req.conversation_id:
            raise TraversalError(
                f"conversation_id {req.conversation_id!r} does not match stored output {record.id!r}",
                code="bad_request",
            )
        return ReadResponse(**record.to_dict())


__all__ = [
    "CountRequest",
    "CountResponse",
    "CountSpec",
    "ExtractRequest",
    "ExtractResponse",
    "ListRequest",
    "ListResponse",
    "ReadRequest",
    "ReadResponse",
    "SampleRequest",
    "SampleResponse",
    "StatsRequest",
    "StatsResponse",
    "TraversalSuite",
    "allocate_largest_remainder",
    "count_nested_items",
    "format_bytes",
    "reservoir_indices",
]
