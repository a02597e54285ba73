"""Artifact citation runtime: creation, lookup, parsing and tool-result annotation.

An artifact is a citable record extracted from a recorded tool result with a
JMESPath ``base`` selector plus per-field ``details`` selectors. Each one is
addressed by its ``(artifact_id, tool_call_id)`` pair and carries two views:

- summary: the preview fields (what ``artifact:ref`` shows in text)
- full:    every schema field (what ``{"$artifact", "$tool"}`` resolves to)

``ArtifactStore`` is turn-scoped. ``ArtifactParser`` turns model output (text
with create/ref tags, or a structured ``dataComponents`` object) into ordered
response parts.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple

import jmespath
from jmespath.exceptions import JMESPathError

from relay.config import Artifact, ArtifactComponent, DataComponent
from relay.schema_projector import extract_full_fields, extract_preview_fields

logger = logging.getLogger(__name__)

STRUCTURE_HINTS_KEY = "_structureHints"
TOOL_CALL_ID_KEY = "_toolCallId"

ARTIFACT_COMPONENT_NAME = "Artifact"
ARTIFACT_CREATE_PREFIX = "ArtifactCreate_"


class ArtifactError(Exception):
    """Raised when an artifact cannot be created or resolved."""
    pass


class ArtifactNotFound(ArtifactError):
    """A citation named an ``(artifact_id, tool_call_id)`` pair that does not exist."""

    def __init__(self, artifact_id: str, tool_call_id: str):
        self.artifact_id = artifact_id
        self.tool_call_id = tool_call_id
        super().__init__(f"Artifact {artifact_id} with toolCallId {tool_call_id} not found")


@dataclass(frozen=True)
class ArtifactCreateRequest:
    artifact_id: str
    tool_call_id: str
    type: str
    base_selector: str
    details_selector: Dict[str, str] = field(default_factory=dict)


@dataclass
class ArtifactRecord:
    artifact_id: str
    tool_call_id: str
    type: Optional[str]
    name: str
    description: str
    summary: Dict[str, Any]
    full: Dict[str, Any]
    task_id: Optional[str] = None

    def summary_part(self) -> Dict[str, Any]:
        """The ``data`` part emitted wherever this artifact is cited in a response."""
        return {
            "artifactId": self.artifact_id,
            "toolCallId": self.tool_call_id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "artifactSummary": self.summary,
        }

    def to_artifact(self) -> Artifact:
        return Artifact(
            artifact_id=self.artifact_id,
            tool_call_id=self.tool_call_id,
            task_id=self.task_id,
            type=self.type,
            name=self.name,
            description=self.description,
            parts=[{"kind": "data", "data": {"summary": self.summary, "full": self.full}}],
            metadata={"artifactType": self.type, "toolCallId": self.tool_call_id},
        )


# ---------------------------------------------------------------------------
# Selector helpers
# ---------------------------------------------------------------------------

_DOUBLE_QUOTED_LITERAL = re.compile(r'=="([^"]*)"')
_TILDE_CONTAINS_DQ = re.compile(r'\[\?(\w+)\s*~\s*contains\(@,\s*"([^"]*)"\)\]')
_TILDE_CONTAINS_SQ = re.compile(r"\[\?(\w+)\s*~\s*contains\(@,\s*'([^']*)'\)\]")
_TILDE = re.compile(r"\s*~\s*")


@lru_cache(maxsize=1000)
def sanitize_selector(selector: str) -> str:
    """Repair the JMESPath mistakes models commonly make.

    ``[?f=="x"]`` becomes ``[?f=='x']``; ``[?f ~ contains(@, 'x')]`` becomes
    ``[?contains(f, `x`)]``; any remaining ``~`` is dropped.
    """
    sanitized = _DOUBLE_QUOTED_LITERAL.sub(r"=='\1'", selector)
    sanitized = _TILDE_CONTAINS_DQ.sub(r"[?contains(\1, `\2`)]", sanitized)
    sanitized = _TILDE_CONTAINS_SQ.sub(r"[?contains(\1, `\2`)]", sanitized)
    return _TILDE.sub(" ", sanitized)


_ESCAPE_FIXES = (
    ("\\\\n", "\n"),
    ("\\n", "\n"),
    ('\\"', '"'),
    ("\\'", "'"),
    ("\\\\", "\\"),
)


def clean_escaped_content(value: Any) -> Any:
    """Undo over-escaping that selectors pick up from JSON-in-string tool output."""
    if isinstance(value, str):
        cleaned = value
        for _ in range(10):
            previous = cleaned
            for needle, replacement in _ESCAPE_FIXES:
                cleaned = cleaned.replace(needle, replacement)
            if cleaned == previous:
                break
        return cleaned
    if isinstance(value, list):
        return [clean_escaped_content(v) for v in value]
    if isinstance(value, dict):
        return {k: clean_escaped_content(v) for k, v in value.items()}
    return value


def _extract_props(item: Any, schema: Dict[str, Any], selectors: Dict[str, str]) -> Dict[str, Any]:
    extracted: Dict[str, Any] = {}
    source = item if isinstance(item, dict) else {}
    for field_name in (schema.get("properties") or {}):
        selector = selectors.get(field_name)
        try:
            raw = jmespath.search(sanitize_selector(selector), item) if selector else source.get(field_name)
        except JMESPathError as e:
            logger.warning("Failed to extract field '%s' with selector %r: %s", field_name, selector, e)
            raw = source.get(field_name)
        if raw is not None:
            extracted[field_name] = clean_escaped_content(raw)
    return extracted


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def _derive_label(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def strip_structure_hints(result: Any) -> Any:
    """Remove ``_structureHints`` from a result (and from a nested ``result`` object)."""
    if not isinstance(result, dict):
        return result
    cleaned = {k: v for k, v in result.items() if k != STRUCTURE_HINTS_KEY}
    inner = cleaned.get("result")
    if isinstance(inner, dict):
        cleaned["result"] = {k: v for k, v in inner.items() if k != STRUCTURE_HINTS_KEY}
    return cleaned


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ArtifactStore:
    """Turn-scoped artifact registry keyed by ``(artifact_id, tool_call_id)``.

    Args:
        artifact_components: Citation types the agent may create.
        tool_session: Source of recorded tool results (``get_result(tool_call_id)``).
        prior_artifacts: Artifacts from earlier turns, resolvable but not re-creatable.
        task_id: Stamped onto every artifact created here.
    """

    def __init__(
        self,
        artifact_components: Iterable[ArtifactComponent] = (),
        tool_session: Any = None,
        prior_artifacts: Iterable[Artifact] = (),
        task_id: Optional[str] = None,
    ):
        self._components = {c.name: c for c in artifact_components}
        self._tool_session = tool_session
        self._task_id = task_id
        self._created: Dict[Tuple[str, str], ArtifactRecord] = {}
        self._prior: Dict[Tuple[str, str], ArtifactRecord] = {}
        for artifact in prior_artifacts:
            self.add_prior(artifact)

    @property
    def created(self) -> List[ArtifactRecord]:
        return list(self._created.values())

    def add_prior(self, artifact: Artifact) -> None:
        key = (artifact.artifact_id, artifact.tool_call_id or artifact.metadata.get("toolCallId") or "")
        data = artifact.parts[0].get("data") if artifact.parts else None
        data = data if isinstance(data, dict) else {}
        summary = data.get("summary") or data or {}
        full = data.get("full") or data.get("data") or summary
        self._prior[key] = ArtifactRecord(
            artifact_id=key[0],
            tool_call_id=key[1],
            type=artifact.type or artifact.metadata.get("artifactType"),
            name=artifact.name or "",
            description=artifact.description or "",
            summary=summary,
            full=full,
            task_id=artifact.task_id,
        )

    def has(self, artifact_id: str, tool_call_id: str) -> bool:
        key = (artifact_id, tool_call_id)
        return key in self._created or key in self._prior

    def get(self, artifact_id: str, tool_call_id: str) -> ArtifactRecord:
        key = (artifact_id, tool_call_id)
        record = self._created.get(key) or self._prior.get(key)
        if record is None:
            raise ArtifactNotFound(artifact_id, tool_call_id)
        return record

    def get_summary(self, artifact_id: str, tool_call_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self.get(artifact_id, tool_call_id).summary)

    def get_full(self, artifact_id: str, tool_call_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self.get(artifact_id, tool_call_id).full)

    def _tool_result_record(self, tool_call_id: str) -> Dict[str, Any]:
        entry = self._tool_session.get_result(tool_call_id) if self._tool_session else None
        if entry is None:
            raise ArtifactError(f"Tool result not found for toolCallId {tool_call_id}")
        return {
            "toolCallId": tool_call_id,
            "toolName": entry.tool_name,
            "args": entry.args,
            "result": strip_structure_hints(entry.result),
        }

    def create_artifact(self, request: ArtifactCreateRequest) -> ArtifactRecord:
        """Extract an artifact from the tool result named by *request*.

        Raises:
            ArtifactError: duplicate pair, missing tool result, bad selector,
                or required preview fields absent from the extracted data.
        """
        key = (request.artifact_id, request.tool_call_id)
        if self.has(*key):
            raise ArtifactError(
                f"Artifact {request.artifact_id} with toolCallId {request.tool_call_id} already exists"
            )

        try:
            record = self._tool_result_record(request.tool_call_id)
            selected = jmespath.search(sanitize_selector(request.base_selector), record)
            if isinstance(selected, list):
                selected = selected[0] if selected else {}
            if not selected:
                logger.warning(
                    "Base selector %r returned no data for artifact %s, using empty object",
                    request.base_selector, request.artifact_id,
                )
                selected = {}

            component = self._components.get(request.type)
            if component is not None and component.props:
                preview_schema = extract_preview_fields(component.props)
                full_schema = extract_full_fields(component.props)
                summary = _extract_props(selected, preview_schema, request.details_selector)
                full = _extract_props(selected, full_schema, request.details_selector)
                missing = [f for f in preview_schema.get("required") or [] if f not in summary]
                if missing:
                    raise ArtifactError(
                        f"Cannot save artifact: Missing required fields [{', '.join(missing)}] "
                        f"for '{request.type}' schema. Found: [{', '.join(summary)}]. "
                        "Consider using a different artifact component type that matches your data structure."
                    )
            else:
                summary = selected if isinstance(selected, dict) else {"value": selected}
                full = summary

            if not full or all(_is_blank(v) for v in full.values()):
                full = {"baseSelector": selected}
        except (ArtifactError, JMESPathError) as e:
            raise ArtifactError(f"Artifact creation failed for {request.artifact_id}: {e}") from e

        artifact = ArtifactRecord(
            artifact_id=request.artifact_id,
            tool_call_id=request.tool_call_id,
            type=request.type,
            name=_derive_label(full, "title", "name") or request.artifact_id,
            description=_derive_label(full, "description", "summary") or "",
            summary=clean_escaped_content(summary),
            full=clean_escaped_content(full),
            task_id=self._task_id,
        )
        self._created[key] = artifact
        logger.info("Created artifact %s (%s) from tool call %s", artifact.artifact_id, artifact.type, artifact.tool_call_id)
        return artifact

    def clear(self) -> None:
        self._created.clear()


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_CREATE_TAG = re.compile(r"<artifact:create\s+([^>]+?)(?:\s*/)?>(?:(.*?)</artifact:create>)?", re.DOTALL)
_REF_TAG = re.compile(r"<artifact:ref\s+id=([\"'])([^\"']*?)\1\s+tool=([\"'])([^\"']*?)\3\s*/>", re.DOTALL)
_ATTR = re.compile(r"(\w+)=\"([^\"]*)\"|(\w+)='([^']*)'|(\w+)=(\{[^}]+\})")


def parse_create_attributes(attr_string: str) -> Optional[ArtifactCreateRequest]:
    """Parse the attribute list of an ``artifact:create`` tag. None when incomplete."""
    attrs: Dict[str, Any] = {}
    for match in _ATTR.finditer(attr_string):
        key = match.group(1) or match.group(3) or match.group(5)
        value = match.group(2) if match.group(1) else match.group(4) if match.group(3) else match.group(6)
        if value and value.startswith("{"):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                pass
        attrs[key] = value

    if not all(attrs.get(k) for k in ("id", "tool", "type", "base")):
        logger.warning("Missing required attributes in artifact annotation: %s", attr_string)
        return None

    details = attrs.get("details")
    return ArtifactCreateRequest(
        artifact_id=attrs["id"],
        tool_call_id=attrs["tool"],
        type=attrs["type"],
        base_selector=attrs["base"],
        details_selector=details if isinstance(details, dict) else {},
    )


class ArtifactParser:
    """Turns model output into ordered ``{"kind": "text"|"data", ...}`` parts."""

    def __init__(self, store: ArtifactStore):
        self.store = store

    @staticmethod
    def has_artifact_markers(text: str) -> bool:
        return bool(_CREATE_TAG.search(text) or _REF_TAG.search(text))

    def _create(self, request: Optional[ArtifactCreateRequest]) -> Optional[ArtifactRecord]:
        if request is None:
            return None
        try:
            return self.store.create_artifact(request)
        except ArtifactError as e:
            logger.warning("Removed failed artifact:create annotation: %s", e)
            return None

    def _reference(self, artifact_id: str, tool_call_id: str) -> Optional[ArtifactRecord]:
        try:
            return self.store.get(artifact_id, tool_call_id)
        except ArtifactNotFound as e:
            logger.warning("Dropping citation: %s", e)
            return None

    def parse_text(self, text: str) -> List[Dict[str, Any]]:
        """Split *text* on create/ref tags. Failed creates and unknown refs are removed."""
        if not self.has_artifact_markers(text):
            return [{"kind": "text", "text": text}]
        matches = [(m, "create") for m in _CREATE_TAG.finditer(text)]
        matches += [(m, "ref") for m in _REF_TAG.finditer(text)]
        matches.sort(key=lambda pair: pair[0].start())

        parts: List[Dict[str, Any]] = []
        last = 0
        for match, kind in matches:
            if match.start() < last:
                continue
            if match.start() > last:
                parts.append({"kind": "text", "text": text[last:match.start()]})

            if kind == "create":
                record = self._create(parse_create_attributes(match.group(1)))
            else:
                record = self._reference(match.group(2), match.group(4))
            if record is not None:
                parts.append({"kind": "data", "data": record.summary_part()})
            last = match.end()

        if last < len(text):
            parts.append({"kind": "text", "text": text[last:]})
        return parts

    def _parse_component(self, component: Any) -> List[Dict[str, Any]]:
        if not isinstance(component, dict):
            return [{"kind": "data", "data": component}]
        name = component.get("name") or ""
        props = component.get("props") or {}

        if name == ARTIFACT_COMPONENT_NAME and props.get("artifact_id") and props.get("tool_call_id"):
            record = self._reference(props["artifact_id"], props["tool_call_id"])
            return [{"kind": "data", "data": record.summary_part()}] if record else []

        if name.startswith(ARTIFACT_CREATE_PREFIX) and props.get("id") and props.get("tool_call_id"):
            request = ArtifactCreateRequest(
                artifact_id=props["id"],
                tool_call_id=props["tool_call_id"],
                type=props.get("type") or name[len(ARTIFACT_CREATE_PREFIX):],
                base_selector=props.get("base_selector") or "",
                details_selector=props.get("details_selector") or {},
            )
            record = self._create(request)
            return [{"kind": "data", "data": record.summary_part()}] if record else []

        return [{"kind": "data", "data": component}]

    def parse_object(self, obj: Any) -> List[Dict[str, Any]]:
        """Expand a structured-pass object, resolving artifact components in place."""
        if isinstance(obj, dict) and isinstance(obj.get("dataComponents"), list):
            parts: List[Dict[str, Any]] = []
            for component in obj["dataComponents"]:
                parts.extend(self._parse_component(component))
            return parts
        return self._parse_component(obj)


# ---------------------------------------------------------------------------
# Component schemas for the structured pass
# ---------------------------------------------------------------------------

def artifact_reference_component() -> DataComponent:
    """The ``Artifact`` component: cite an existing artifact from structured output."""
    return DataComponent(
        id="artifact-reference",
        name=ARTIFACT_COMPONENT_NAME,
        description="Reference to an existing artifact. Shows its preview fields to the user.",
        props={
            "type": "object",
            "properties": {
                "artifact_id": {"type": "string", "description": "The artifact id"},
                "tool_call_id": {"type": "string", "description": "The tool call id the artifact was created from"},
            },
            "required": ["artifact_id", "tool_call_id"],
        },
    )


def artifact_create_components(components: Iterable[ArtifactComponent]) -> List[DataComponent]:
    """One ``ArtifactCreate_<Name>`` component per artifact type."""
    result = []
    for component in components:
        full = extract_full_fields(component.props or {})
        details = {
            name: {"type": "string", "description": f"JMESPath selector for {name}, relative to base_selector"}
            for name in full.get("properties") or {}
        }
        result.append(DataComponent(
            id=f"artifact-create-{component.name}",
            name=f"{ARTIFACT_CREATE_PREFIX}{component.name}",
            description=f"Create a {component.name} artifact from a tool result. {component.description}".strip(),
            props={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Unique artifact id"},
                    "tool_call_id": {"type": "string", "description": "Tool call id of the source result"},
                    "type": {"type": "string", "enum": [component.name], "description": "Artifact type"},
                    "base_selector": {"type": "string", "description": "JMESPath selector for ONE item in the result"},
                    "details_selector": {"type": "object", "properties": details, "description": "Field selectors"},
                },
                "required": ["id", "tool_call_id", "type", "base_selector"],
            },
        ))
    return result


# ---------------------------------------------------------------------------
# Tool-result annotation
# ---------------------------------------------------------------------------

def _common_fields(obj: Any, depth: int = 0) -> List[str]:
    if depth > 5:
        return []
    fields: List[str] = []
    if isinstance(obj, list):
        for item in obj[:3]:
            if isinstance(item, dict):
                fields.extend(item.keys())
    elif isinstance(obj, dict):
        fields.extend(obj.keys())
        for value in obj.values():
            fields.extend(_common_fields(value, depth + 1))
    return list(dict.fromkeys(fields))


def _quote(value: Any) -> str:
    return str(value).replace("'", "\\'")


def _example_selectors(obj: Any, prefix: str = "result", depth: int = 0) -> List[str]:
    if depth > 5:
        return []
    selectors: List[str] = []
    if isinstance(obj, list) and obj and isinstance(obj[0], dict):
        first = obj[0]
        if first.get("title"):
            selectors.append(f"{prefix}[?title=='{_quote(first['title'])}'] | [0]")
        if first.get("type"):
            selectors.append(f"{prefix}[?type=='{_quote(first['type'])}'] | [0]")
        if first.get("record_type"):
            selectors.append(f"{prefix}[?record_type=='{_quote(first['record_type'])}'] | [0]")
        if first.get("url"):
            selectors.append(f"{prefix}[?url!=null] | [0]")
        if first.get("type") and first.get("title"):
            selectors.append(
                f"{prefix}[?type=='{_quote(first['type'])}' && title=='{_quote(first['title'])}'] | [0]"
            )
        selectors.append(f"{prefix}[0]")
    elif isinstance(obj, dict):
        for key, value in obj.items():
            if isinstance(value, (dict, list)):
                selectors.extend(_example_selectors(value, f"{prefix}.{key}", depth + 1))
    return selectors


def build_structure_hints(result: Any) -> Optional[Dict[str, Any]]:
    """Selector hints for artifact creation, or None for results with no structure."""
    analysed = result
    if isinstance(result, str):
        try:
            analysed = json.loads(result)
        except json.JSONDecodeError:
            return None
    if not isinstance(analysed, (dict, list)):
        return None
    return {
        "commonFields": _common_fields(analysed)[:15],
        "exampleSelectors": list(dict.fromkeys(_example_selectors(analysed)))[:15],
    }


def annotate_tool_result(result: Any, tool_call_id: str, with_structure_hints: bool) -> Any:
    """Prepare a tool result for the model: add ``_toolCallId`` and optional hints.

    Primitives are wrapped for display (``{"text": ...}`` for strings,
    ``{"value": ...}`` otherwise). The raw result recorded in the tool session
    is never modified.
    """
    if result is None:
        return result
    if isinstance(result, dict):
        annotated = dict(result)
    elif isinstance(result, str):
        annotated = {"text": result}
    else:
        annotated = {"value": result}
    annotated[TOOL_CALL_ID_KEY] = tool_call_id

    if with_structure_hints:
        hints = build_structure_hints(result)
        if hints:
            annotated[STRUCTURE_HINTS_KEY] = hints
    return annotated


def format_tool_result(tool_name: str, args: Any, result: Any, tool_call_id: str) -> str:
    """Render a tool call for the conversation history."""
    input_text = json.dumps(args, indent=2, ensure_ascii=False) if args else "No input"

    parsed = result
    if isinstance(result, str):
        try:
            parsed = json.loads(result)
        except json.JSONDecodeError:
            parsed = result
    cleaned = strip_structure_hints(parsed)
    output = cleaned if isinstance(cleaned, str) else json.dumps(cleaned, indent=2, ensure_ascii=False)

    return (
        f"## Tool: {tool_name}\n\n"
        f"### 🔧 TOOL_CALL_ID: {tool_call_id}\n\n"
        f"### Input\n{input_text}\n\n"
        f"### Output\n{output}"
    )
